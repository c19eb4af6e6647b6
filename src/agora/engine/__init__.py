"""Election engine — workflow state machine, tally, and command guards."""

from agora.engine.election_engine import ElectionEngine
from agora.engine.tally import select_winner
from agora.engine.workflow_state_machine import WorkflowStateMachine

__all__ = ["ElectionEngine", "WorkflowStateMachine", "select_winner"]
