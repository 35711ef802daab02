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
Installer Component

Puts a specific MongoDB release's binaries in place from the official
tarballs. Each step downloads the tarball for its own binary variant, since
older releases were never built for newer distributions.
"""

import os
import shutil
import subprocess
import tarfile
from pathlib import Path
from typing import List, Optional

import requests

from ..utils.errors import InstallError
from ..utils.index import Version, log_message

DEFAULT_BASE_URL = "https://fastdl.mongodb.org/linux"
DEFAULT_SHELL_URL = "https://downloads.mongodb.com/compass/mongosh-{version}-linux-x64.tgz"
DEFAULT_SHELL_VERSION = "2.1.5"


class Installer:
    """Contract the step executor drives."""

    def install(self, target_version: Version, platform_variant: str) -> None:
        raise NotImplementedError


class TarballInstaller(Installer):
    """Downloads release tarballs with requests and copies bin/* into place."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, bin_dir: str = "/usr/bin",
                 work_dir: str = "/tmp/mongodb-upgrade", timeout: int = 300,
                 shell_url: str = DEFAULT_SHELL_URL, shell_version: str = DEFAULT_SHELL_VERSION,
                 package_commands: Optional[List[List[str]]] = None):
        self.base_url = base_url.rstrip("/")
        self.bin_dir = Path(bin_dir)
        self.work_dir = Path(work_dir)
        self.timeout = timeout
        self.shell_url = shell_url
        self.shell_version = shell_version
        self.package_commands = package_commands or []

    def tarball_name(self, target_version: Version, platform_variant: str) -> str:
        return f"mongodb-linux-x86_64-{platform_variant}-{target_version}.tgz"

    def _download(self, url: str, dest: Path) -> None:
        log_message(f"Downloading {url}...")
        with requests.get(url, stream=True, timeout=self.timeout) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)

    def _extract(self, tarball: Path) -> Path:
        """Extract into the work dir and return the tarball's top directory."""
        with tarfile.open(tarball, "r:gz") as tar:
            top = tar.getnames()[0].split("/")[0]
            tar.extractall(self.work_dir)
        return self.work_dir / top

    def _copy_binaries(self, extract_dir: Path) -> List[str]:
        copied = []
        self.bin_dir.mkdir(parents=True, exist_ok=True)
        for binary in sorted((extract_dir / "bin").iterdir()):
            if binary.is_file():
                dest = self.bin_dir / binary.name
                shutil.copy2(binary, dest)
                os.chmod(dest, 0o755)
                copied.append(binary.name)
        return copied

    def install(self, target_version: Version, platform_variant: str) -> None:
        """
        Install one release's server binaries.

        Args:
            target_version: Release to install, e.g. 4.2.25
            platform_variant: Build variant, e.g. ubuntu1804

        Raises:
            InstallError: On any download, integrity or copy failure
        """
        filename = self.tarball_name(target_version, platform_variant)
        url = f"{self.base_url}/{filename}"
        tarball = self.work_dir / filename
        log_message(f"Installing MongoDB {target_version} ({platform_variant})")

        extract_dir = None
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._download(url, tarball)
            extract_dir = self._extract(tarball)
            copied = self._copy_binaries(extract_dir)
            if "mongod" not in copied:
                raise InstallError(f"{filename} did not contain a mongod binary")
        except requests.RequestException as e:
            raise InstallError(f"Failed to download MongoDB {target_version}: {e}") from e
        except (tarfile.TarError, IndexError) as e:
            raise InstallError(f"Failed to extract {filename}: {e}") from e
        except OSError as e:
            raise InstallError(f"Failed to install MongoDB {target_version} binaries: {e}") from e
        finally:
            if tarball.exists():
                tarball.unlink()
            if extract_dir is not None:
                shutil.rmtree(extract_dir, ignore_errors=True)

        log_message(f"✓ MongoDB {target_version} binaries installed to {self.bin_dir}")

    def install_shell(self) -> bool:
        """Install mongosh and link the legacy mongo name to it. Failure is only a warning."""
        url = self.shell_url.format(version=self.shell_version)
        tarball = self.work_dir / f"mongosh-{self.shell_version}.tgz"
        log_message("Installing MongoDB Shell (mongosh)")
        extract_dir = None
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._download(url, tarball)
            extract_dir = self._extract(tarball)
            self._copy_binaries(extract_dir)
            legacy = self.bin_dir / "mongo"
            if legacy.is_symlink() or legacy.exists():
                legacy.unlink()
            legacy.symlink_to(self.bin_dir / "mongosh")
        except (requests.RequestException, tarfile.TarError, IndexError, OSError) as e:
            log_message(f"Failed to install mongosh: {e}", "WARNING")
            return False
        finally:
            if tarball.exists():
                tarball.unlink()
            if extract_dir is not None:
                shutil.rmtree(extract_dir, ignore_errors=True)
        log_message("✓ MongoDB Shell installed")
        return True

    def ensure_runtime_libraries(self) -> List[str]:
        """
        Run the configured package commands (libcurl compatibility and friends).

        Returns:
            List[str]: Warnings for commands that failed
        """
        warnings = []
        for cmd in self.package_commands:
            log_message(f"Running: {' '.join(cmd)}", "DEBUG")
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                warnings.append(f"{' '.join(cmd)} could not run: {e}")
                continue
            if result.returncode != 0:
                warnings.append(f"{' '.join(cmd)} failed: {result.stderr.strip()}")
        for warning in warnings:
            log_message(warning, "WARNING")
        if self.package_commands and not warnings:
            log_message("✓ Runtime libraries installed")
        return warnings
