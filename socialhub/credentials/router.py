"""Credential management routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from socialhub.auth.dependencies import require_workspace_role
from socialhub.auth.jwt import ACCOUNT_MANAGER_ROLES, AuthContext
from socialhub.credentials.service import CredentialNotFound, disconnect_credential
from socialhub.schemas.credentials import CredentialDeleteResponse
from socialhub.storage.db import get_session
from socialhub.storage.tenant import set_workspace_context


router = APIRouter(prefix="/credentials", tags=["credentials"])


@router.delete("/{credential_id}", response_model=CredentialDeleteResponse)
def delete_credential(
    credential_id: str,
    auth: AuthContext = Depends(require_workspace_role(*ACCOUNT_MANAGER_ROLES)),
    session: Session = Depends(get_session),
) -> CredentialDeleteResponse:
    set_workspace_context(session, auth.workspace_id)
    try:
        disconnect_credential(session, workspace_id=auth.workspace_id, credential_id=credential_id)
    except CredentialNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    return CredentialDeleteResponse(deleted=True)
