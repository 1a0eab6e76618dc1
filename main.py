# Toolsmith/main.py
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from config.prompts import CONFIRMATION_QUESTIONS, FIELD_QUESTIONS
from config.settings import ToolsmithSettings
from core_logic.safe_connector import SafeSqlExecutor
from core_logic.workflow import WorkflowCoordinator, WorkflowState
from ingestion.introspection import JsonDiscoveryProvider, PostgresDiscoveryProvider

# Configure basic logging to see the flow
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
main_logger = logging.getLogger('Toolsmith.Main')


class ConsoleOperatorPrompt:
    """Asks the operator on stdin. An empty answer declines a field; 'quit' declines everything."""

    def ask_missing(self, fields: List[str], context: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if context and "tools" in context:
            print(json.dumps({"tools": context["tools"]}, indent=2))
            if context.get("skipped"):
                print(f"Skipped: {json.dumps(context['skipped'], indent=2)}")

        questions = {**FIELD_QUESTIONS, **CONFIRMATION_QUESTIONS} if context else FIELD_QUESTIONS
        answers: Dict[str, Any] = {}
        for field in fields:
            raw = input(f"{questions.get(field, field)} ").strip()
            if raw.lower() == "quit":
                return None
            answers[field] = raw.lower() if field in ("action", "provision", "execute", "store_tools") else raw
        if context:
            # Unanswered yes/no questions mean "no".
            answers = {k: v for k, v in answers.items() if v != ""}
        return answers


def build_coordinator(settings: ToolsmithSettings) -> WorkflowCoordinator:
    if settings.discovery_file:
        discovery = JsonDiscoveryProvider(settings.discovery_file)
    else:
        discovery = PostgresDiscoveryProvider(settings.discovery_db_uri, settings.discovery_schemas, settings.discovery_list_limit)
    executor = SafeSqlExecutor(settings.admin_db_uri) if settings.admin_db_uri else None
    return WorkflowCoordinator(settings, discovery, ConsoleOperatorPrompt(), executor=executor)


def report_active_version(coordinator: WorkflowCoordinator):
    """Logs the stored version after a successful executed insert."""
    provisioning = coordinator.provisioning
    if not (provisioning and provisioning.insert_result and provisioning.insert_result.succeeded):
        return
    active = coordinator.executor.active_configuration(coordinator.inputs.owner_email)
    if active is not None:
        main_logger.info(f"Active configuration for {active.email}: version {active.version} ({len(active.tools)} tools).")


if __name__ == '__main__':
    settings = ToolsmithSettings()
    coordinator = build_coordinator(settings)

    main_logger.info("--- STARTING TOOLSMITH SESSION ---")
    outcome = coordinator.run()
    print(outcome.render())

    if outcome.state is WorkflowState.DONE:
        report_active_version(coordinator)
    else:
        main_logger.error(f"Session ended in state '{outcome.state.value}': {outcome.errors}")
        sys.exit(1)
