from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, StringConstraints, ValidationError

from everly.logging_config import get_logger
from everly.nudges.errors import NudgeValidationError
from everly.nudges.queue import EnqueueResult, NewNudgeJob, NudgeQueueStore
from everly.nudges.template import compute_message_hash, dedupe_key, render_template

logger = get_logger(__name__)

TemplateValue = Union[str, int, float, bool, None]

# Ids are trimmed; message text and variable values are kept byte for byte
Identifier = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class NudgeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    member_id: Identifier
    recipe_name: Identifier
    message: str
    variables: Optional[Dict[str, TemplateValue]] = None
    channel: Identifier = "stub"


class DispatchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hub_id: Identifier
    nudges: List[NudgeRequest]


@dataclass
class DispatchResult:
    enqueued: int = 0
    skipped: int = 0
    results: List[EnqueueResult] = field(default_factory=list)

    def to_dict(self):
        return {
            "enqueued": self.enqueued,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


def _error_details(error: ValidationError):
    return [
        {
            "loc": ".".join(str(part) for part in e["loc"]),
            "msg": e["msg"],
            "type": e["type"],
        }
        for e in error.errors()
    ]


def validate_dispatch_payload(payload: Any) -> DispatchRequest:
    """Validate a whole dispatch payload up front; raises NudgeValidationError."""
    try:
        return DispatchRequest.model_validate(payload)
    except ValidationError as e:
        raise NudgeValidationError("invalid dispatch payload", details=_error_details(e)) from e


class NudgeDispatcher:
    """Render candidate nudges and enqueue them under a per-bucket dedupe key."""

    def __init__(self, store: NudgeQueueStore, dedupe_period: str = "week"):
        self.store = store
        self.dedupe_period = dedupe_period

    def dispatch(self, hub_id: str, nudges: List[Union[Dict[str, Any], NudgeRequest]]) -> DispatchResult:
        """
        Enqueue a batch of nudges for one hub.

        The batch is validated as a whole before anything is written. A
        duplicate or rate-limited nudge is counted in skipped, not raised.
        """
        request = validate_dispatch_payload({"hub_id": hub_id, "nudges": nudges})
        return self.dispatch_request(request)

    def dispatch_request(self, request: DispatchRequest) -> DispatchResult:
        result = DispatchResult()

        for nudge in request.nudges:
            variables = nudge.variables or {}
            rendered = render_template(nudge.message, variables)
            enqueue_result = self.store.enqueue(
                NewNudgeJob(
                    hub_id=request.hub_id,
                    member_id=nudge.member_id,
                    recipe_name=nudge.recipe_name,
                    message=rendered,
                    variables=nudge.variables,
                    channel=nudge.channel,
                    dedupe_key=dedupe_key(request.hub_id, nudge.recipe_name, nudge.member_id, self.dedupe_period),
                    message_hash=compute_message_hash(rendered, variables, nudge.recipe_name),
                )
            )
            result.results.append(enqueue_result)
            if enqueue_result.enqueued:
                result.enqueued += 1
            else:
                result.skipped += 1

        logger.info(
            "Nudge dispatch completed",
            hub_id=request.hub_id,
            requested=len(request.nudges),
            enqueued=result.enqueued,
            skipped=result.skipped
        )
        return result
