import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from onboarding.api.deps import get_directory, get_oauth_service
from onboarding.core.errors import LarkApiError
from onboarding.models.lark_token import LarkUserTokenPublic
from onboarding.models.trainer import TrainerPublic
from onboarding.services.lark_oauth_service import LarkOAuthService
from onboarding.services.trainer_directory import TrainerDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trainers", tags=["trainers"])


@router.get("", response_model=list[TrainerPublic])
async def list_trainers(
    directory: TrainerDirectory = Depends(get_directory),
    oauth: LarkOAuthService = Depends(get_oauth_service),
) -> list[TrainerPublic]:
    trainers = directory.all()
    status_by_email = await oauth.authorization_status(trainers)
    return [
        TrainerPublic(
            name=t.name,
            email=t.email,
            languages=list(t.languages),
            regions=list(t.regions),
            authorized=status_by_email.get(t.email, False),
        )
        for t in trainers
    ]


@router.get("/authorization-status")
async def authorization_status(
    directory: TrainerDirectory = Depends(get_directory),
    oauth: LarkOAuthService = Depends(get_oauth_service),
) -> dict:
    status_by_email = await oauth.authorization_status(directory.everyone())
    return {
        "trainers": [{"email": email, "authorized": ok} for email, ok in status_by_email.items()],
        "authorized_count": sum(status_by_email.values()),
        "total": len(status_by_email),
    }


@router.get("/authorize")
async def authorize(
    email: str = Query(...),
    redirect: bool = Query(True),
    directory: TrainerDirectory = Depends(get_directory),
    oauth: LarkOAuthService = Depends(get_oauth_service),
):
    if directory.get_by_email(email) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trainer not found")
    url = oauth.get_authorization_url(email)
    if redirect:
        return RedirectResponse(url=url, status_code=302)
    return {"authorization_url": url}


@router.get("/callback", response_model=LarkUserTokenPublic)
async def callback(
    code: str = Query(...),
    state: str | None = Query(None),
    oauth: LarkOAuthService = Depends(get_oauth_service),
) -> LarkUserTokenPublic:
    try:
        row = await oauth.handle_callback(code, state)
    except LarkApiError as e:
        logger.warning("Lark OAuth callback failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Failed to exchange code with Lark: {e}",
        ) from e
    return LarkUserTokenPublic(
        email=row.email,
        open_id=row.open_id,
        access_expires_at=row.access_expires_at,
        refresh_expires_at=row.refresh_expires_at,
        updated_at=row.updated_at,
    )


@router.post("/{email}/revoke")
async def revoke(
    email: str,
    oauth: LarkOAuthService = Depends(get_oauth_service),
) -> dict:
    if not await oauth.revoke(email):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No authorization found for trainer")
    return {"message": f"Calendar authorization revoked for {email}"}
