from fastapi import APIRouter, Depends

from gymbooking.core.core_endpoints import schemas_core
from gymbooking.core.utils.config import Settings
from gymbooking.dependencies import get_settings
from gymbooking.types.module import CoreModule

router = APIRouter(tags=["Core"])

core_module = CoreModule(
    root="core",
    tag="Core",
    router=router,
)


@router.get(
    "/information",
    response_model=schemas_core.CoreInformation,
    status_code=200,
)
async def read_information(
    settings: Settings = Depends(get_settings),
):
    """
    Return information about GymBooking. This endpoint can be used to check if the API is up.
    """

    return schemas_core.CoreInformation(
        ready=True,
        version=settings.APP_VERSION,
    )
