from __future__ import annotations

from typing import Dict, Optional, Protocol

from pipebricks.core.exceptions import ValidationError
from pipebricks.models.pipeline import DataSourceConfig


class ConnectionResolver(Protocol):
    """Turns a stored connection profile id into a usable connection string.

    Profile storage and secret decryption live outside the engine; the engine
    only ever receives the already-decrypted string.
    """

    def build_connection_string(self, profile_id: str) -> str:
        ...


class StaticConnectionResolver:
    def __init__(self, profiles: Optional[Dict[str, str]] = None):
        self._profiles: Dict[str, str] = dict(profiles or {})

    def build_connection_string(self, profile_id: str) -> str:
        try:
            return self._profiles[profile_id]
        except KeyError as exc:
            raise ValidationError(f"Unknown connection profile {profile_id!r}") from exc


def resolve_connection(
    config: DataSourceConfig, resolver: Optional[ConnectionResolver]
) -> DataSourceConfig:
    """Return a copy of ``config`` with its profile's connection string filled in.

    Configs without a ``connectionProfileId`` parameter are returned unchanged.
    """
    profile_id = config.connection_profile_id
    if not profile_id:
        return config
    if resolver is None:
        raise ValidationError(
            f"Connection profile {profile_id!r} referenced but no connection resolver is configured"
        )
    return config.model_copy(update={"connection_string": resolver.build_connection_string(profile_id)})
