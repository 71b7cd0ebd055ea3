import pytest

from rconflow.contracts import EventType, TriggerEvent, parse_definition
from rconflow.matcher import TriggerMatcher, evaluation_data
from rconflow.persistence import Workflow


def _workflow(triggers, enabled=True, variables=None):
    return Workflow(
        server_id="server-1",
        name="admin call",
        enabled=enabled,
        definition=parse_definition(
            {"triggers": triggers, "variables": variables or {}, "steps": []}
        ),
    )


def _chat(message, **payload):
    return TriggerEvent(
        event_type=EventType.RCON_CHAT_MESSAGE,
        server_id="server-1",
        payload={"message": message, **payload},
        source="rcon",
    )


ADMIN_TRIGGER = {
    "id": "admin",
    "event_type": "RCON_CHAT_MESSAGE",
    "conditions": [{"field": "message", "operator": "starts_with", "value": "!admin"}],
}


def test_matching_trigger_fires():
    matcher = TriggerMatcher()
    wf = _workflow([ADMIN_TRIGGER])
    assert [t.id for t in matcher.matching_triggers(_chat("!admin griefer"), wf)] == ["admin"]
    assert not matcher.match(_chat("hello"), wf)


def test_event_type_must_match():
    wf = _workflow([{**ADMIN_TRIGGER, "event_type": "LOG_PLAYER_DIED"}])
    assert TriggerMatcher().matching_triggers(_chat("!admin"), wf) == []


def test_disabled_workflow_and_trigger_never_match():
    matcher = TriggerMatcher()
    assert matcher.matching_triggers(_chat("!admin"), _workflow([ADMIN_TRIGGER], enabled=False)) == []
    disabled = {**ADMIN_TRIGGER, "enabled": False}
    assert matcher.matching_triggers(_chat("!admin"), _workflow([disabled])) == []


def test_trigger_without_conditions_matches_every_event_of_its_type():
    wf = _workflow([{"id": "any", "event_type": "RCON_CHAT_MESSAGE"}])
    assert TriggerMatcher().match(_chat("anything"), wf)


def test_every_matching_trigger_is_returned():
    second = {"id": "all", "event_type": "RCON_CHAT_MESSAGE"}
    wf = _workflow([ADMIN_TRIGGER, second])
    assert [t.id for t in TriggerMatcher().matching_triggers(_chat("!admin"), wf)] == [
        "admin",
        "all",
    ]


def test_invalid_condition_is_treated_as_no_match(caplog):
    bad = {
        "id": "bad",
        "event_type": "RCON_CHAT_MESSAGE",
        "conditions": [{"field": "message", "operator": "sounds_like", "value": "x"}],
    }
    wf = _workflow([bad, {"id": "ok", "event_type": "RCON_CHAT_MESSAGE"}])
    with caplog.at_level("WARNING"):
        matched = TriggerMatcher().matching_triggers(_chat("!admin"), wf)
    assert [t.id for t in matched] == ["ok"]
    assert "invalid condition" in caplog.text


def test_conditions_can_use_trigger_event_prefix_and_variables():
    trigger = {
        "id": "threshold",
        "event_type": "RCON_CHAT_MESSAGE",
        "conditions": [
            {"field": "trigger_event.player.team", "operator": "equals", "value": "2"},
            {"field": "variables.min_team", "operator": "less_than", "value": 3},
        ],
    }
    wf = _workflow([trigger], variables={"min_team": 1})
    event = _chat("hi", player={"team": 2})
    data = evaluation_data(event, wf)
    assert data["event_type"] == "RCON_CHAT_MESSAGE"
    assert data["player"] == {"team": 2}
    assert TriggerMatcher().match(event, wf)


@pytest.mark.parametrize("message", ["!ADMIN", " !admin"])
def test_string_match_is_case_and_whitespace_sensitive(message):
    assert not TriggerMatcher().match(_chat(message), _workflow([ADMIN_TRIGGER]))
