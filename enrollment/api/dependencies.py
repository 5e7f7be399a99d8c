"""Shared API dependencies: caller identity and external collaborators."""
from __future__ import annotations

import uuid

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from enrollment.config import Settings, get_settings
from enrollment.core.security import decode_token
from enrollment.database import get_db
from enrollment.integrations import FlutterwaveClient, PaymentGateway
from enrollment.models import Parent
from enrollment.services.provisioning import CareerQuizProvisioner, InitialResourceProvisioner

AUTH_SCHEME = HTTPBearer(auto_error=False)


def get_current_parent(
    creds: HTTPAuthorizationCredentials | None = Depends(AUTH_SCHEME),
    db: Session = Depends(get_db),
) -> Parent:
    if creds is None or not creds.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
        )
    try:
        payload = decode_token(creds.credentials)
        parent_id = uuid.UUID(str(payload.get("sub", "")))
    except (jwt.PyJWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token"
        )

    parent = db.get(Parent, parent_id)
    if parent is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject"
        )
    return parent


def get_app_settings() -> Settings:
    return get_settings()


def get_gateway(config: Settings = Depends(get_app_settings)) -> PaymentGateway:
    return FlutterwaveClient(config)


def get_provisioner(config: Settings = Depends(get_app_settings)) -> InitialResourceProvisioner:
    return CareerQuizProvisioner(config)
