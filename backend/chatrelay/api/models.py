from fastapi import APIRouter, Depends

from chatrelay.api.deps import get_catalog
from chatrelay.core.security import get_current_user
from chatrelay.models.user import User
from chatrelay.services.model_catalog import ModelCatalog

router = APIRouter(prefix="/models", tags=["models"])


@router.get("")
async def api_list_models(
    user: User = Depends(get_current_user),
    catalog: ModelCatalog = Depends(get_catalog),
):
    """Selectable models, plus the one to preselect for this user."""
    return {
        "models": await catalog.get_models(),
        "selected_model": user.preferred_model or catalog.default_model,
    }
