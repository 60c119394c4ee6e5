"""
mongowire: an asyncio client for the MongoDB wire protocol.

    async with ConnectionPool(ConnectionSettings(hosts="db1:27017,db2:27017")) as pool:
        connection = await pool.next(ConnectionRequirement.WRITABLE)
        cursor = await connection.execute_cursor({"find": "users"}, Namespace("app"))
        users = await cursor.drain()
"""

__version__ = "0.1.0"

# submodules read __version__ from the package while it is still importing
from .commands import Namespace  # noqa: E402
from .config import ConnectionSettings, Credentials, Host  # noqa: E402
from .connection import Connection  # noqa: E402
from .cursor import Cursor  # noqa: E402
from .errors import MongoWireError  # noqa: E402
from .pool import ConnectionPool, ConnectionRequirement  # noqa: E402

__all__ = [
    "__version__",
    "Connection",
    "ConnectionPool",
    "ConnectionRequirement",
    "ConnectionSettings",
    "Credentials",
    "Cursor",
    "Host",
    "MongoWireError",
    "Namespace",
]
