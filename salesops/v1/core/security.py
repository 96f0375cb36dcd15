import secrets
from dataclasses import dataclass

from fastapi import Depends, Header

from salesops.config.settings import AuthMode, Settings, SettingsDep
from salesops.v1.core.exceptions import UnauthorizedError


@dataclass
class Principal:
    """Represents the operator calling the admin API."""

    user_id: str


def _matches(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


async def get_principal(
    x_admin_token: str | None = Header(None, alias="X-Admin-Token"),
    settings: Settings = SettingsDep,
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the dev admin
    - token: Requires X-Admin-Token to match ADMIN_API_TOKEN
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id)
    elif settings.auth_mode == AuthMode.TOKEN:
        if not _matches(x_admin_token, settings.admin_api_token):
            raise UnauthorizedError("Missing or invalid X-Admin-Token")
        return Principal(user_id="api_token")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


async def verify_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    settings: Settings = SettingsDep,
) -> None:
    """Guard for scheduler-triggered endpoints; rejects when CRON_SECRET is unset."""
    if not _matches(x_cron_secret, settings.cron_secret):
        raise UnauthorizedError("Missing or invalid X-Cron-Secret")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
CronSecretDep = Depends(verify_cron_secret)
