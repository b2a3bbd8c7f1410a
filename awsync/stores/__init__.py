"""Event store backends behind one capability contract."""

from ..config import Config
from .base import EventStore
from .local import LocalDatastore
from .remote import RemoteStore

__all__ = ["EventStore", "LocalDatastore", "RemoteStore", "open_store"]


def open_store(spec: str, config: Config | None = None) -> EventStore:
    """Open a store from a spec string.

    Accepted forms:
        local:<path>          SQLite datastore file (":memory:" allowed)
        <path>.db             shorthand for local:<path>.db
        remote:<host>:<port>  HTTP server
        remote:<host>         HTTP server on the configured port
        remote:               the configured server

    Raises:
        ValueError: If the spec cannot be parsed.
    """
    config = config or Config()
    server = config.server

    if spec.endswith(".db") and ":" not in spec.split("/")[0]:
        spec = f"local:{spec}"

    scheme, sep, rest = spec.partition(":")
    if not sep:
        raise ValueError(f"Invalid store spec {spec!r}, expected local:PATH or remote:HOST:PORT")

    if scheme == "local":
        if not rest:
            raise ValueError("local: store spec needs a path")
        store = LocalDatastore(rest)
        store.connect()
        return store

    if scheme == "remote":
        host, _, port = rest.partition(":")
        try:
            port_number = int(port) if port else server.port
        except ValueError:
            raise ValueError(f"Invalid port in store spec {spec!r}") from None
        return RemoteStore(
            host=host or server.host,
            port=port_number,
            client_name=server.client_name,
            timeout=server.timeout_seconds,
            max_retries=server.max_retries,
        )

    raise ValueError(f"Unknown store scheme {scheme!r} in {spec!r}")
