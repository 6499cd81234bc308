"""FastAPI dependency injection."""

import uuid
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings, get_settings
from app.services.automation_service import AutomationService, build_automation_service
from app.services.follow_up_service import FollowUpService

# Database engine and session factory (initialized in lifespan)
_engine = None
_session_factory = None

security = HTTPBearer()


def _create_engine(settings: Settings):
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = _create_engine(settings or get_settings())
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


async def get_db(settings: Settings = Depends(get_settings)) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    factory = get_session_factory(settings)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _decode_access_token(credentials: HTTPAuthorizationCredentials, settings: Settings) -> dict:
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_private_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from e

    if payload.get("sub") is None or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return payload


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """Extract and validate user_id from JWT token."""
    payload = _decode_access_token(credentials, settings)
    try:
        return uuid.UUID(payload["sub"])
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID in token",
        ) from e


async def get_current_organization_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID | None:
    """Optional ``org`` claim scoping the caller to an organization."""
    org = _decode_access_token(credentials, settings).get("org")
    if org is None:
        return None
    try:
        return uuid.UUID(org)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid organization ID in token",
        ) from e


def get_follow_up_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> FollowUpService:
    return FollowUpService(db, settings)


def get_automation_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    follow_ups: FollowUpService = Depends(get_follow_up_service),
) -> AutomationService:
    return build_automation_service(db, settings, follow_ups)


def init_db(settings: Settings) -> tuple:
    """Initialize database engine and session factory. Called from lifespan."""
    global _engine, _session_factory
    _engine = _create_engine(settings)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine, _session_factory


async def shutdown_db():
    """Dispose of the database engine. Called from lifespan."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None
