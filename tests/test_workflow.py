import pytest

from core_logic.workflow import (
    CONFIRMATION_FIELDS, OPTIONAL_FIELDS, PROMPTED_FIELDS, WorkflowCoordinator, WorkflowInputs, WorkflowState,
)
from fakes import InMemoryConfigStore, ScriptedOperator, StaticDiscovery

INPUTS = {"project_ref": "abcd1234", "owner_email": "a@x.com", "categories": "select", "project_url": "https://abcd1234.supabase.co"}
STORE_ALL = {"action": "accept", "provision": "yes", "execute": "yes", "store_tools": "yes"}


def _coordinator(settings, snapshot, *responses, executor=None, discovery=None, on_ask=None):
    operator = ScriptedOperator(*responses, on_ask=on_ask)
    discovery = discovery or StaticDiscovery(snapshot)
    return WorkflowCoordinator(settings, discovery, operator, executor=executor), operator, discovery


# --- Happy paths ---

def test_collects_missing_inputs_then_finishes(settings, orders_snapshot):
    coordinator, operator, _ = _coordinator(settings, orders_snapshot, dict(INPUTS), {"action": "accept"})

    outcome = coordinator.run()

    assert outcome.state is WorkflowState.DONE
    assert operator.calls[0][0] == PROMPTED_FIELDS + OPTIONAL_FIELDS
    assert operator.calls[1][0] == CONFIRMATION_FIELDS
    assert outcome.history == [
        WorkflowState.COLLECTING_INPUTS, WorkflowState.DISCOVERING, WorkflowState.COMPILING,
        WorkflowState.AWAITING_CONFIRMATION, WorkflowState.ASSEMBLING, WorkflowState.DONE,
    ]
    assert [t["name"] for t in outcome.bundle.tools["tools"]] == ["select_orders"]
    assert outcome.bundle.sql is None


def test_provided_inputs_skip_collection(settings, orders_snapshot):
    coordinator, operator, _ = _coordinator(settings, orders_snapshot, {"action": "accept"})

    outcome = coordinator.run(WorkflowInputs(**INPUTS))

    assert outcome.state is WorkflowState.DONE
    assert [fields for fields, _ in operator.calls] == [CONFIRMATION_FIELDS]
    assert "https://abcd1234.supabase.co" in outcome.bundle.mcp_config["mcpServers"][settings.mcp_server_name]["args"]


def test_optional_answers_reach_config_and_insert(settings, orders_snapshot):
    answer = {**INPUTS, "project_label": "shop", "anon_key": "eyJhbGciOi.anon"}
    coordinator, operator, _ = _coordinator(settings, orders_snapshot, answer, dict(STORE_ALL))

    outcome = coordinator.run({"project_ref": "abcd1234"})

    assert outcome.state is WorkflowState.DONE
    assert operator.calls[0][0] == ["owner_email", "categories", "project_url", *OPTIONAL_FIELDS]
    assert "eyJhbGciOi.anon" in outcome.bundle.mcp_config["mcpServers"][settings.mcp_server_name]["args"]
    assert outcome.bundle.sql["insert_params"] == {"email": "a@x.com", "project_name": "shop"}


def test_declined_categories_fall_back_to_defaults(settings, orders_snapshot):
    answer = {"project_ref": "abcd1234", "owner_email": "a@x.com", "categories": "", "project_url": None}
    coordinator, _, _ = _coordinator(settings, orders_snapshot, answer, None)

    outcome = coordinator.run()

    assert outcome.state is WorkflowState.DONE
    assert coordinator.inputs.categories == list(settings.default_categories)


def test_regenerate_recompiles_from_the_same_snapshot(settings, orders_snapshot):
    coordinator, _, discovery = _coordinator(
        settings, orders_snapshot,
        {"action": "regenerate", "categories": "select, update"},
        {"action": "accept"},
    )

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert discovery.calls == 1
    assert outcome.history.count(WorkflowState.COMPILING) == 2
    assert "update_orders_total" in [t["name"] for t in outcome.bundle.tools["tools"]]


def test_regeneration_limit_keeps_last_tools(settings, orders_snapshot):
    limited = settings.model_copy(update={"max_regenerations": 1})
    coordinator, _, _ = _coordinator(limited, orders_snapshot, {"action": "regenerate"}, {"action": "regenerate"})

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert any("Regeneration limit" in e for e in outcome.errors)


def test_invalid_confirmation_is_asked_again(settings, orders_snapshot):
    coordinator, operator, _ = _coordinator(settings, orders_snapshot, {"action": "maybe"}, {"action": "accept"})

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert len(operator.calls) == 2


# --- Provisioning ---

def test_provision_execute_and_store_versions(settings, orders_snapshot):
    store = InMemoryConfigStore()
    first, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL), executor=store)

    outcome = first.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert WorkflowState.PROVISIONING in outcome.history
    sql = outcome.bundle.sql
    assert sql["executed"] is True
    assert "insert: versioned_insert: 3 statement(s) executed." in sql["execution_result"]
    assert [r.version for r in store.active_rows("a@x.com")] == [1]

    second, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL), executor=store)
    assert second.run(INPUTS).state is WorkflowState.DONE

    # Setup is a no-op the second time; the new version supersedes the first.
    assert store.executed[2].statements == []
    assert [(r.version, r.is_active) for r in store.rows] == [(1, False), (2, True)]


def test_sql_returned_when_no_executor(settings, orders_snapshot):
    coordinator, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL))

    outcome = coordinator.run(INPUTS)

    sql = outcome.bundle.sql
    assert outcome.state is WorkflowState.DONE
    assert sql["executed"] is False
    assert "tool_configurations" in sql["insert_sql"]
    assert "No SQL executor configured; SQL returned without execution." in sql["notes"]


def test_setup_error_is_carried_forward_and_blocks_insert(settings, orders_snapshot):
    store = InMemoryConfigStore(fail_on="create_policy")
    coordinator, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL), executor=store)

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    sql = outcome.bundle.sql
    assert sql["execution_result"] == "setup: permission denied for schema public"
    assert "insert_sql" not in sql
    assert any(note.startswith("Table setup failed") for note in sql["notes"])
    assert store.rows == []


def test_executor_exception_aborts_but_keeps_results(settings, orders_snapshot):
    store = InMemoryConfigStore(raise_on_execute=ConnectionError("server closed the connection unexpectedly"))
    coordinator, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL), executor=store)

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.ABORTED
    assert outcome.bundle.sql["execution_result"] == "setup: server closed the connection unexpectedly"
    assert [t["name"] for t in outcome.bundle.tools["tools"]] == ["select_orders"]
    assert outcome.bundle.discovery["tables"][0]["name"] == "orders"
    assert {"tool": "sql_executor", "error": "sql_executor failed: server closed the connection unexpectedly"} in outcome.bundle.discovery["limitations"]


def test_declined_owner_email_skips_insert(settings, orders_snapshot):
    answer = {"project_ref": "abcd1234", "owner_email": "", "categories": "select", "project_url": ""}
    coordinator, _, _ = _coordinator(settings, orders_snapshot, answer, dict(STORE_ALL))

    outcome = coordinator.run()

    assert outcome.state is WorkflowState.DONE
    assert "Owner email was declined; configuration insert skipped." in outcome.bundle.sql["notes"]
    assert any("Owner email declined" in e for e in outcome.errors)


# --- Aborts and cancellation ---

def test_discovery_failure_aborts_after_one_retry(settings, orders_snapshot):
    discovery = StaticDiscovery(failures=[TimeoutError("list_tables timed out"), TimeoutError("list_tables timed out")])
    coordinator, _, _ = _coordinator(settings, orders_snapshot, discovery=discovery)

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.ABORTED
    assert discovery.calls == 2
    assert outcome.bundle.discovery["limitations"] == [{"tool": "discovery", "error": "list_tables timed out"}]
    assert outcome.bundle.tools == {"tools": [], "skipped": []}


def test_discovery_retry_recovers(settings, orders_snapshot):
    discovery = StaticDiscovery(orders_snapshot, failures=[ConnectionResetError("reset by peer")])
    coordinator, _, _ = _coordinator(settings, orders_snapshot, {"action": "accept"}, discovery=discovery)

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert outcome.errors == ["discovery retried after failure: reset by peer"]


def test_missing_project_ref_aborts(settings, orders_snapshot):
    coordinator, operator, discovery = _coordinator(settings, orders_snapshot, None)

    outcome = coordinator.run()

    assert outcome.state is WorkflowState.ABORTED
    assert discovery.calls == 0
    assert len(operator.calls) == 1
    assert outcome.errors == ["Missing required input: project_ref"]


def test_invalid_email_aborts_as_incomplete(settings, orders_snapshot):
    coordinator, _, _ = _coordinator(settings, orders_snapshot)

    outcome = coordinator.run({**INPUTS, "owner_email": "not-an-email"})

    assert outcome.state is WorkflowState.ABORTED
    assert outcome.errors == ["Missing required input: owner_email"]


def test_operator_abort_keeps_compiled_tools(settings, orders_snapshot):
    coordinator, _, _ = _coordinator(settings, orders_snapshot, {"action": "abort"})

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.ABORTED
    assert [t["name"] for t in outcome.bundle.tools["tools"]] == ["select_orders"]


def test_cancel_before_provisioning_is_honoured(settings, orders_snapshot):
    holder = {}
    coordinator, _, _ = _coordinator(
        settings, orders_snapshot, dict(STORE_ALL),
        executor=InMemoryConfigStore(), on_ask=lambda fields: holder["c"].request_cancel(),
    )
    holder["c"] = coordinator

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.ABORTED
    assert WorkflowState.PROVISIONING not in outcome.history
    assert outcome.bundle.sql is None


def test_cancel_refused_once_provisioning_dispatched(settings, orders_snapshot):
    holder = {"answers": []}
    store = InMemoryConfigStore(on_execute=lambda plan: holder["answers"].append(holder["c"].request_cancel()))
    coordinator, _, _ = _coordinator(settings, orders_snapshot, dict(STORE_ALL), executor=store)
    holder["c"] = coordinator

    outcome = coordinator.run(INPUTS)

    assert outcome.state is WorkflowState.DONE
    assert holder["answers"] == [False, False]
    assert any(e.startswith("Cancellation refused") for e in outcome.errors)
    assert [r.version for r in store.active_rows("a@x.com")] == [1]


def test_transitions_are_enforced(settings, orders_snapshot):
    coordinator, _, _ = _coordinator(settings, orders_snapshot, {"action": "accept"})

    with pytest.raises(RuntimeError, match="Illegal transition"):
        coordinator._move(WorkflowState.PROVISIONING)

    coordinator.run(INPUTS)
    with pytest.raises(RuntimeError):
        coordinator.run(INPUTS)
