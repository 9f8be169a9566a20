from fastapi import APIRouter, Depends, HTTPException

from raibid.modules.infra.config import get_config
from raibid.modules.infra.models import Component
from raibid.modules.infra.orchestrator import Orchestrator

router = APIRouter()


def get_orchestrator() -> Orchestrator:
    return Orchestrator(get_config())


@router.get("/status")
def all_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return [s.to_dict() for s in orchestrator.status()]


@router.get("/status/{component}")
def component_status(component: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        parsed = Component.parse(component)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return orchestrator.status([parsed.value])[0].to_dict()
