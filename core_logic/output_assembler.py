# Toolsmith/core_logic/output_assembler.py
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from config.prompts import MCP_CONFIG_NOTE
from config.settings import MCP_SERVER_NAME
from core_logic.data_models import CompileResult, DiscoverySnapshot, Limitation
from core_logic.provisioning import ExecutionResult, StatementPlan

output_logger = logging.getLogger('Toolsmith.Output')
output_logger.setLevel(logging.INFO)

PROJECT_URL_PLACEHOLDER = "<PROJECT_URL>"
ANON_KEY_PLACEHOLDER = "<ANON_KEY_OR_placeholder>"
USER_EMAIL_PLACEHOLDER = "<USER_EMAIL_placeholder>"
USER_PASSWORD_PLACEHOLDER = "<USER_PASSWORD_placeholder>"
REDACTED = "[REDACTED]"


class TokenScrubber:
    """
    Removes access tokens from rendered blocks.
    Known token values are masked exactly; personal-access-token shapes by pattern.
    """
    def __init__(self, known_tokens: Iterable[str] = ()):
        self.known_tokens = [t for t in known_tokens if t]
        self.token_patterns = {
            "SUPABASE_PAT": r"\bsbp_[A-Za-z0-9]{20,}\b",
            "SERVICE_ROLE_SECRET": r"\bsb_secret_[A-Za-z0-9_\-]{10,}\b",
        }

    def _mask_value(self, value: str) -> str:
        masked = value
        for token in self.known_tokens:
            masked = masked.replace(token, REDACTED)
        for token_type, pattern in self.token_patterns.items():
            if re.search(pattern, masked):
                output_logger.warning(f"Access token detected and redacted: {token_type}")
                masked = re.sub(pattern, REDACTED, masked)
        return masked

    def scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._mask_value(value)
        if isinstance(value, dict):
            return {k: self.scrub(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.scrub(v) for v in value]
        return value


class ProvisioningReport(BaseModel):
    """Everything the provisioning branch produced, including carried-forward errors."""
    setup_plan: StatementPlan
    setup_result: Optional[ExecutionResult] = None
    insert_plan: Optional[StatementPlan] = None
    insert_result: Optional[ExecutionResult] = None
    notes: List[str] = Field(default_factory=list)

    @property
    def executed(self) -> bool:
        return self.setup_result is not None

    def execution_text(self) -> Optional[str]:
        parts = []
        if self.setup_result is not None:
            parts.append(f"setup: {self.setup_result.as_text()}")
        if self.insert_result is not None:
            parts.append(f"insert: {self.insert_result.as_text()}")
        return "\n".join(parts) if parts else None


class OutputBundle(BaseModel):
    """The four-block response contract; the SQL block exists only when provisioning was requested."""
    discovery: Dict[str, Any]
    tools: Dict[str, Any]
    mcp_config: Dict[str, Any]
    sql: Optional[Dict[str, Any]] = None

    def blocks(self) -> List[Tuple[str, Dict[str, Any]]]:
        blocks = [("DISCOVERY", self.discovery), ("TOOLS", self.tools), ("MCP_CONFIG", self.mcp_config)]
        if self.sql is not None:
            blocks.append(("SQL_JSON", self.sql))
        return blocks

    def render(self) -> str:
        """Numbered blocks, each an independently parseable JSON document."""
        rendered = []
        for number, (label, block) in enumerate(self.blocks(), start=1):
            rendered.append(f"{number}) {label}\n{json.dumps(block, indent=2)}")
            if label == "MCP_CONFIG":
                rendered.append(MCP_CONFIG_NOTE)
        return "\n\n".join(rendered)


class OutputAssembler:
    """Merges stage results into the output bundle. Pure apart from logging."""
    def __init__(self, access_tokens: Iterable[str] = (), server_name: str = MCP_SERVER_NAME):
        self.scrubber = TokenScrubber(access_tokens)
        self.server_name = server_name

    def _discovery_block(self, snapshot: Optional[DiscoverySnapshot], extra_limitations: List[Limitation]) -> Dict[str, Any]:
        snapshot = snapshot or DiscoverySnapshot()
        return snapshot.with_limitations(extra_limitations).model_dump(by_alias=True, mode="json")

    def _tools_block(self, compiled: Optional[CompileResult]) -> Dict[str, Any]:
        compiled = compiled or CompileResult()
        return {
            "tools": compiled.tools_payload(),
            "skipped": [s.model_dump(mode="json") for s in compiled.skipped],
        }

    def _mcp_config_block(self, project_url: Optional[str], anon_key: Optional[str]) -> Dict[str, Any]:
        # Credentials stay placeholders unless the operator supplied them; no PATs ever.
        return {
            "mcpServers": {
                self.server_name: {
                    "command": "npx",
                    "args": [
                        "-y", self.server_name,
                        "--url", project_url or PROJECT_URL_PLACEHOLDER,
                        "--anon-key", anon_key or ANON_KEY_PLACEHOLDER,
                        "--email", USER_EMAIL_PLACEHOLDER,
                        "--password", USER_PASSWORD_PLACEHOLDER,
                    ],
                }
            }
        }

    def _sql_block(self, report: ProvisioningReport) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "sql": report.setup_plan.render(),
            "executed": report.executed,
            "execution_result": report.execution_text(),
            "notes": list(report.notes),
        }
        if report.insert_plan is not None:
            block["insert_sql"] = report.insert_plan.render()
            block["insert_params"] = report.insert_plan.display_params()
        return block

    def assemble(
        self,
        snapshot: Optional[DiscoverySnapshot],
        compiled: Optional[CompileResult],
        project_url: Optional[str] = None,
        anon_key: Optional[str] = None,
        provisioning: Optional[ProvisioningReport] = None,
        extra_limitations: Iterable[Limitation] = (),
    ) -> OutputBundle:
        bundle = OutputBundle(
            discovery=self.scrubber.scrub(self._discovery_block(snapshot, list(extra_limitations))),
            tools=self.scrubber.scrub(self._tools_block(compiled)),
            mcp_config=self.scrubber.scrub(self._mcp_config_block(project_url, anon_key)),
            sql=self.scrubber.scrub(self._sql_block(provisioning)) if provisioning is not None else None,
        )
        output_logger.info(f"Assembled {len(bundle.blocks())} output blocks.")
        return bundle
