"""Trigger endpoint: change notifications become queued runs.

``202`` a new run was queued, ``409`` the change is a duplicate within the
dedup window (the body names the original run), ``400`` the signature or a
field is invalid, ``503`` the admission queue is full.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hexship.api import processes
from hexship.kernel.engine import PipelineEngine
from hexship.server.routes.deps import get_engine

router = APIRouter(prefix="/triggers", tags=["triggers"])

SIGNATURE_HEADER = "X-Hexship-Signature"


class TriggerRequest(BaseModel):
    """Change notification body; camelCase and snake_case keys are accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repository: str
    branch: str
    change_ref: str
    signature: str = ""
    pipeline: str | None = None


class TriggerResponse(BaseModel):
    """Receipt for an ingested notification."""

    run_id: str
    duplicate: bool = False
    status: str = Field(description="'queued' or 'duplicate'")


@router.post("", status_code=202, response_model=TriggerResponse)
async def submit_trigger(
    request: TriggerRequest,
    response: Response,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    signature_header: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
) -> TriggerResponse:
    """Admit a change notification.

    The signature may travel in the body or in the ``X-Hexship-Signature``
    header; the header wins when both are present.
    """
    receipt = await processes.submit_trigger(
        engine,
        repository=request.repository,
        branch=request.branch,
        change_ref=request.change_ref,
        signature=signature_header or request.signature,
        pipeline=request.pipeline,
    )
    response.status_code = receipt["status_code"]
    return TriggerResponse(
        run_id=receipt["run_id"],
        duplicate=receipt["duplicate"],
        status="duplicate" if receipt["duplicate"] else "queued",
    )
