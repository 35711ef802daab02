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
Feature Compatibility Version Reconciler

Keeps featureCompatibilityVersion equal to the installed release. Every hop
needs the previous release's FCV in place before the next binary will start,
so a mismatch left behind here surfaces as a failed start one step later.

Detection order:
1. getParameter featureCompatibilityVersion (3.4+)
2. admin.system.version document
3. Inference from the installed server version (never authoritative)

A failed or unconfirmed correction is a warning, not a fatal error: the final
verification pass reconciles once more.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..utils.errors import AdminUnavailableError
from ..utils.index import Clock, Version, log_message
from .admin_client import AdminClient
from .version_probe import VersionProbe

# 7.0 refuses an FCV change without confirm: true
CONFIRM_REQUIRED = re.compile(r"confirm:\s*true", re.IGNORECASE)


class ReconcileResult(Enum):
    MATCHED = "matched"
    CORRECTED = "corrected"
    UNVERIFIABLE = "unverifiable"


@dataclass
class FCVReading:
    value: str
    source: str
    authoritative: bool = True


def _ok(reply: Optional[dict]) -> bool:
    return bool(reply) and reply.get("ok") in (1, 1.0, True)


class FCVProbe:
    name = "fcv"
    authoritative = True

    def read(self) -> Optional[str]:
        raise NotImplementedError


class ParameterFCVProbe(FCVProbe):
    name = "getParameter"

    def __init__(self, admin: AdminClient):
        self.admin = admin

    def read(self) -> Optional[str]:
        reply = self.admin.command({"getParameter": 1, "featureCompatibilityVersion": 1})
        if not _ok(reply):
            return None
        fcv = reply.get("featureCompatibilityVersion")
        if isinstance(fcv, dict):
            fcv = fcv.get("version")
        return str(fcv) if fcv else None


class SystemVersionFCVProbe(FCVProbe):
    name = "admin.system.version"

    def __init__(self, admin: AdminClient):
        self.admin = admin

    def read(self) -> Optional[str]:
        document = self.admin.find_one("admin", "system.version", {"_id": "featureCompatibilityVersion"})
        if document and document.get("version"):
            return str(document["version"])
        return None


class InferredFCVProbe(FCVProbe):
    name = "inferred"
    authoritative = False

    def __init__(self, version_probe: VersionProbe):
        self.version_probe = version_probe

    def read(self) -> Optional[str]:
        version = self.version_probe.probe()
        return version.release if version else None


class FCVReconciler:
    """Reads and corrects featureCompatibilityVersion."""

    def __init__(self, admin: AdminClient, probes: List[FCVProbe], clock: Optional[Clock] = None,
                 settle_delay: float = 3.0):
        self.admin = admin
        self.probes = probes
        self.clock = clock or Clock()
        self.settle_delay = settle_delay

    @staticmethod
    def expected_fcv_for(version: Version) -> str:
        return version.release

    def read_current(self, authoritative_only: bool = False) -> Optional[FCVReading]:
        """First probe with an answer wins; None when nothing answered."""
        for probe in self.probes:
            if authoritative_only and not probe.authoritative:
                continue
            try:
                value = probe.read()
            except AdminUnavailableError as e:
                log_message(f"FCV probe {probe.name} unavailable: {e}", "DEBUG")
                continue
            if value:
                if not probe.authoritative:
                    log_message(f"Inferred FCV {value} from the installed MongoDB version", "WARNING")
                return FCVReading(value=value, source=probe.name, authoritative=probe.authoritative)
            log_message(f"FCV probe {probe.name} gave no answer, trying next method...", "DEBUG")
        return None

    def _set(self, expected: str, confirm: bool) -> Optional[dict]:
        command = {"setFeatureCompatibilityVersion": expected}
        if confirm:
            command["confirm"] = True
        try:
            reply = self.admin.command(command)
        except AdminUnavailableError as e:
            log_message(f"FCV command could not be sent: {e}", "WARNING")
            return None
        log_message(f"Raw FCV result: {reply}", "DEBUG")
        return reply

    def reconcile(self, expected: str) -> ReconcileResult:
        """
        Make featureCompatibilityVersion equal to expected.

        Args:
            expected: Target FCV such as "4.2"

        Returns:
            ReconcileResult: MATCHED when nothing had to change, CORRECTED when
            a change was confirmed by re-reading, UNVERIFIABLE otherwise
        """
        current = self.read_current()
        if current is not None and current.value == expected:
            log_message(f"FCV is correctly set to {expected} ({current.source})")
            return ReconcileResult.MATCHED

        if current is None:
            log_message(f"Could not determine current FCV; attempting to set it to {expected}", "WARNING")
        else:
            log_message(f"FCV mismatch: expected {expected} but found '{current.value}'; correcting", "WARNING")

        reply = self._set(expected, confirm=False)
        if reply is not None and not _ok(reply) and CONFIRM_REQUIRED.search(str(reply.get("errmsg", reply))):
            log_message("FCV change requires confirm: true. Retrying with confirmation...", "WARNING")
            reply = self._set(expected, confirm=True)

        if _ok(reply):
            log_message(f"setFeatureCompatibilityVersion {expected} accepted")
        elif reply is not None:
            log_message(f"setFeatureCompatibilityVersion {expected} rejected: {reply.get('errmsg', reply)}", "WARNING")

        self.clock.sleep(self.settle_delay)
        after = self.read_current(authoritative_only=True)
        if after is not None and after.value == expected:
            log_message(f"✓ FCV verification successful: {after.value}")
            return ReconcileResult.CORRECTED

        found = after.value if after else "unreadable"
        log_message(f"FCV verification failed. Expected: {expected}, Got: {found}", "WARNING")
        return ReconcileResult.UNVERIFIABLE
