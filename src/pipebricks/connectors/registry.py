from __future__ import annotations

import time
from typing import Any, Callable, ClassVar, Dict, List, Literal, Optional, Tuple

from pipebricks.core.exceptions import PipebricksError, UnknownConnectorType, flatten_error_chain
from pipebricks.core.logger import get_logger
from pipebricks.models.run_log import ConnectionTestResult

Role = Literal["source", "destination"]
ConnectorKey = Tuple[str, str]
ConnectorFactory = Callable[[], Any]
ConnectionTester = Callable[[str], None]

log = get_logger(__name__)


class ConnectorRegistryError(PipebricksError, RuntimeError):
    pass


def _normalize(token: str) -> str:
    return (token or "").strip().lower()


class ConnectorRegistry:
    """Maps (type token, role) to a reader/writer factory.

    Tokens are case-insensitive. A factory is usually the connector class
    itself; it is called with no arguments on every resolve.
    """

    _registry: ClassVar[Dict[ConnectorKey, ConnectorFactory]] = {}
    _testers: ClassVar[Dict[str, ConnectionTester]] = {}

    @classmethod
    def register(
        cls,
        *,
        type_token: str,
        role: Role,
        factory: ConnectorFactory,
        overwrite: bool = False,
    ) -> None:
        key = (_normalize(type_token), role)
        if not overwrite and key in cls._registry:
            existing = cls._registry[key]
            raise ConnectorRegistryError(
                f"Connector already registered for type={type_token!r}, role={role!r}: {existing}"
            )
        cls._registry[key] = factory

    @classmethod
    def get(cls, type_token: str, role: Role) -> ConnectorFactory:
        try:
            return cls._registry[(_normalize(type_token), role)]
        except KeyError as exc:
            raise UnknownConnectorType(type_token, role) from exc

    @classmethod
    def try_get(cls, type_token: str, role: Role) -> Optional[ConnectorFactory]:
        return cls._registry.get((_normalize(type_token), role))

    @classmethod
    def tokens(cls, role: Role) -> List[str]:
        return sorted(token for token, r in cls._registry if r == role)

    @classmethod
    def register_tester(cls, type_token: str, tester: ConnectionTester, *, overwrite: bool = False) -> None:
        key = _normalize(type_token)
        if not overwrite and key in cls._testers:
            raise ConnectorRegistryError(f"Connection tester already registered for type={type_token!r}")
        cls._testers[key] = tester

    @classmethod
    def get_tester(cls, type_token: str) -> ConnectionTester:
        try:
            return cls._testers[_normalize(type_token)]
        except KeyError as exc:
            raise UnknownConnectorType(type_token, "connection tester") from exc

    @classmethod
    def clear(cls) -> None:
        cls._registry.clear()
        cls._testers.clear()


def register_source_reader(*type_tokens: str, overwrite: bool = False) -> Callable[[Any], Any]:
    def decorator(reader_class: Any) -> Any:
        for token in type_tokens:
            ConnectorRegistry.register(type_token=token, role="source", factory=reader_class, overwrite=overwrite)
        return reader_class

    return decorator


def register_destination_writer(*type_tokens: str, overwrite: bool = False) -> Callable[[Any], Any]:
    def decorator(writer_class: Any) -> Any:
        for token in type_tokens:
            ConnectorRegistry.register(type_token=token, role="destination", factory=writer_class, overwrite=overwrite)
        return writer_class

    return decorator


def register_connection_tester(*type_tokens: str, overwrite: bool = False) -> Callable[[ConnectionTester], ConnectionTester]:
    def decorator(tester: ConnectionTester) -> ConnectionTester:
        for token in type_tokens:
            ConnectorRegistry.register_tester(token, tester, overwrite=overwrite)
        return tester

    return decorator


def resolve_source_reader(type_token: str) -> Any:
    return ConnectorRegistry.get(type_token, "source")()


def resolve_destination_writer(type_token: str) -> Any:
    return ConnectorRegistry.get(type_token, "destination")()


def test_connection(provider: str, connection_string: str) -> ConnectionTestResult:
    """Open and close a connection for ``provider``; never raises."""
    start = time.perf_counter()
    try:
        tester = ConnectorRegistry.get_tester(provider)
        tester(connection_string)
    except Exception as exc:
        elapsed = int((time.perf_counter() - start) * 1000)
        log.warning(f"Connection test failed for provider={provider!r}: {exc}")
        return ConnectionTestResult(success=False, error_message=flatten_error_chain(exc), elapsed_ms=elapsed)
    elapsed = int((time.perf_counter() - start) * 1000)
    return ConnectionTestResult(success=True, elapsed_ms=elapsed)


# not a pytest test
test_connection.__test__ = False  # type: ignore[attr-defined]
