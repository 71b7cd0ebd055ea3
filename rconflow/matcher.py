"""Decide which workflow triggers fire for an incoming event."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .conditions import evaluate_conditions
from .contracts import Trigger, TriggerEvent
from .exceptions import ConditionError
from .persistence.models import Workflow

logger = logging.getLogger(__name__)


def evaluation_data(event: TriggerEvent, workflow: Workflow) -> Dict[str, Any]:
    """Data trigger conditions are evaluated against.

    Payload fields are available at top level as well as under
    ``trigger_event``.
    """
    data: Dict[str, Any] = dict(event.payload)
    data.update(
        {
            "trigger_event": event.payload,
            "event_type": event.event_type.value,
            "server_id": event.server_id,
            "variables": dict(workflow.definition.variables),
        }
    )
    return data


class TriggerMatcher:
    """Stateless matcher between events and workflow triggers."""

    def matching_triggers(self, event: TriggerEvent, workflow: Workflow) -> List[Trigger]:
        if not workflow.enabled:
            return []
        data = evaluation_data(event, workflow)
        matched: List[Trigger] = []
        for trigger in workflow.definition.triggers:
            if not trigger.enabled or trigger.event_type != event.event_type:
                continue
            try:
                if evaluate_conditions(trigger.conditions, data):
                    matched.append(trigger)
            except ConditionError as e:
                logger.warning(
                    f"Trigger {trigger.id} of workflow {workflow.id} has an invalid condition: {e}"
                )
        return matched

    def match(self, event: TriggerEvent, workflow: Workflow) -> bool:
        return bool(self.matching_triggers(event, workflow))
