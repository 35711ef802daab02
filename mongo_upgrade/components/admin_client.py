"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Admin Client Component

One way to send administrative commands to the live server, whichever release
it is running. The driver channel (pymongo) covers 3.6 and newer; the shell
channel (mongosh, then the legacy mongo shell) covers everything the driver
refuses to talk to. LayeredAdmin puts them in order behind one interface.

Every channel returns the server reply as a dict, including replies with
ok: 0, so callers can read errmsg. Only an unreachable server raises.
"""

import json
import shutil
import subprocess
from typing import Any, Dict, List, Optional

import pymongo
from pymongo.errors import ConfigurationError, ConnectionFailure, OperationFailure

from ..utils.errors import AdminUnavailableError
from ..utils.index import log_message

RESULT_MARKER = "RESULT_MARKER:"

_SHELL_SCRIPT = (
    "try { var r = (%s); print('" + RESULT_MARKER + "' + JSON.stringify(r)); } "
    "catch (e) { print('" + RESULT_MARKER + "' + JSON.stringify({ok: 0, errmsg: String(e.message || e)})); }"
)


class AdminClient:
    """Capability interface for administrative access to mongod."""

    name = "admin"

    def command(self, document: Dict[str, Any], database: str = "admin") -> Dict[str, Any]:
        raise NotImplementedError

    def find_one(self, database: str, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def ping(self) -> bool:
        try:
            return self.command({"ping": 1}).get("ok") in (1, 1.0, True)
        except AdminUnavailableError:
            return False

    def close(self) -> None:
        pass


class PyMongoAdmin(AdminClient):
    """Driver channel: direct connection with a bounded server selection timeout."""

    name = "pymongo"

    def __init__(self, host: str = "127.0.0.1", port: int = 27017, timeout_ms: int = 5000):
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        self._client = None

    def _connect(self) -> pymongo.MongoClient:
        if self._client is None:
            self._client = pymongo.MongoClient(
                self.host,
                self.port,
                directConnection=True,
                serverSelectionTimeoutMS=self.timeout_ms,
                connectTimeoutMS=self.timeout_ms,
            )
        return self._client

    def command(self, document: Dict[str, Any], database: str = "admin") -> Dict[str, Any]:
        try:
            return dict(self._connect()[database].command(document))
        except OperationFailure as e:
            return dict(e.details or {"ok": 0, "errmsg": str(e)})
        except (ConnectionFailure, ConfigurationError) as e:
            self.close()
            raise AdminUnavailableError(f"{self.name}: {e}") from e

    def find_one(self, database: str, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            document = self._connect()[database][collection].find_one(query)
        except OperationFailure as e:
            log_message(f"{self.name}: find_one on {database}.{collection} failed: {e}", "DEBUG")
            return None
        except (ConnectionFailure, ConfigurationError) as e:
            self.close()
            raise AdminUnavailableError(f"{self.name}: {e}") from e
        return dict(document) if document is not None else None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class ShellAdmin(AdminClient):
    """Shell channel: runs --eval through mongosh or the legacy mongo shell."""

    name = "shell"

    def __init__(self, port: int = 27017, shells: tuple = ("mongosh", "mongo"), timeout: int = 60):
        self.port = port
        self.shells = shells
        self.timeout = timeout

    def _shell(self) -> str:
        for shell in self.shells:
            if shutil.which(shell):
                return shell
        raise AdminUnavailableError(f"{self.name}: none of {', '.join(self.shells)} is installed")

    def evaluate(self, expression: str) -> Any:
        """Evaluate a JavaScript expression and return its JSON-decoded value."""
        cmd = [self._shell(), "--port", str(self.port), "--quiet", "--eval", _SHELL_SCRIPT % expression]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AdminUnavailableError(f"{self.name}: {e}") from e

        payload = None
        for line in result.stdout.splitlines():
            if line.startswith(RESULT_MARKER):
                payload = line[len(RESULT_MARKER):]
        if payload is None:
            raise AdminUnavailableError(
                f"{self.name}: no reply (exit {result.returncode}): {result.stderr.strip() or result.stdout.strip()}")
        try:
            return json.loads(payload)
        except ValueError as e:
            raise AdminUnavailableError(f"{self.name}: unreadable reply {payload!r}") from e

    def command(self, document: Dict[str, Any], database: str = "admin") -> Dict[str, Any]:
        reply = self.evaluate(f"db.getSiblingDB({json.dumps(database)}).runCommand({json.dumps(document)})")
        return reply if isinstance(reply, dict) else {"ok": 0, "errmsg": f"unexpected reply {reply!r}"}

    def find_one(self, database: str, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        reply = self.evaluate(
            f"db.getSiblingDB({json.dumps(database)}).getCollection({json.dumps(collection)})"
            f".findOne({json.dumps(query)})"
        )
        return reply if isinstance(reply, dict) else None


class LayeredAdmin(AdminClient):
    """Tries each channel in order; the first reachable one answers."""

    name = "layered"

    def __init__(self, channels: List[AdminClient]):
        self.channels = channels

    def _first(self, call):
        errors = []
        for channel in self.channels:
            try:
                return call(channel)
            except AdminUnavailableError as e:
                errors.append(str(e))
        raise AdminUnavailableError("; ".join(errors) or "no admin channels configured")

    def command(self, document: Dict[str, Any], database: str = "admin") -> Dict[str, Any]:
        return self._first(lambda channel: channel.command(document, database))

    def find_one(self, database: str, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._first(lambda channel: channel.find_one(database, collection, query))

    def close(self) -> None:
        for channel in self.channels:
            channel.close()


def create_admin_client(host: str, port: int, timeout_ms: int = 5000, shell_timeout: int = 60) -> LayeredAdmin:
    """Driver first, shell second."""
    return LayeredAdmin([
        PyMongoAdmin(host=host, port=port, timeout_ms=timeout_ms),
        ShellAdmin(port=port, timeout=shell_timeout),
    ])
