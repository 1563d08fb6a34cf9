"""Admin endpoints for credential pool inspection and renewal."""

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from chat_gateway.auth import check_api_key


async def require_api_key(request: Request) -> None:
    check_api_key(request, request.app.state.config)


admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_api_key)]
)


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get status of all credentials in the pool."""
    credential_pool = request.app.state.credential_pool
    return await credential_pool.get_status()


@admin_router.get("/status/{credential_id}")
async def get_credential_status(
    request: Request, credential_id: str
) -> Dict[str, object]:
    """Get status of a specific credential."""
    credential_pool = request.app.state.credential_pool
    status = await credential_pool.get_credential_status(credential_id)
    if status is None:
        raise HTTPException(
            status_code=404, detail=f"Credential {credential_id} not found"
        )
    return status


@admin_router.post("/renew")
async def renew_tokens(request: Request) -> Dict[str, object]:
    """Renew bearer tokens that are expired or close to expiry."""
    credential_pool = request.app.state.credential_pool
    renewed = await credential_pool.renew_expiring()
    return {"message": "Token renewal finished", "renewed": renewed}


@admin_router.post("/renew/{credential_id}")
async def renew_credential(request: Request, credential_id: str) -> Dict[str, object]:
    """Force a token exchange for one credential."""
    credential_pool = request.app.state.credential_pool
    credential = credential_pool.pool.find(credential_id)
    if credential is None:
        raise HTTPException(
            status_code=404, detail=f"Credential {credential_id} not found"
        )
    renewed = await credential_pool.renew(credential)
    if not renewed:
        raise HTTPException(
            status_code=502, detail=f"Token renewal failed for {credential_id}"
        )
    return {"message": f"{credential_id} renewed", "renewed": True}
