"""API key and verifier identity dependencies."""

from fastapi import Header, HTTPException


async def require_api_key(
    x_ledgersync_api_key: str = Header(..., alias="X-Ledgersync-Api-Key"),
) -> str:
    """FastAPI dependency that validates the shared API key from header."""
    from ledgersync.common.config import get_settings

    settings = get_settings()
    if x_ledgersync_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_ledgersync_api_key


async def require_verifier(
    x_verifier_id: str = Header(..., alias="X-Verifier-Id"),
    _api_key: str = Header(..., alias="X-Ledgersync-Api-Key"),
) -> str:
    """Resolve the authenticated verifier identity.

    Authentication itself happens upstream; the gateway forwards the verified
    principal in ``X-Verifier-Id`` alongside the shared API key.
    """
    from ledgersync.common.config import get_settings

    settings = get_settings()
    if _api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    verifier_id = x_verifier_id.strip()
    if not verifier_id:
        raise HTTPException(status_code=401, detail="Missing verifier identity")
    return verifier_id
