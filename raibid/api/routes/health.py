from fastapi import APIRouter

from raibid import __version__

router = APIRouter()


@router.get("/health")
def health():
    """Liveness of the API process itself."""
    return {"status": "ok", "version": __version__}
