"""
Document sources.

A source lists candidate files and makes each one readable locally.
Local folders are read in place; FTP and SFTP files are downloaded into
a working directory first and archived on the remote side afterwards.
Blocking client libraries run in worker threads.
"""

import asyncio
import ftplib
import os
import posixpath
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import paramiko

from docflow.core.config import Settings
from docflow.ingestion.router import TerminalState, dated_folder
from docflow.models import CandidateFile, SourceKind, utc_now
from docflow.utils.errors import ConfigurationError, SourceError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


class DocumentSource(ABC):
    """Where the scanner finds files."""

    kind: SourceKind = SourceKind.LOCAL
    is_remote: bool = False

    @abstractmethod
    async def list_candidates(self) -> List[CandidateFile]:
        """Files currently waiting in the source, in listing order."""
        pass

    @abstractmethod
    async def fetch(self, candidate: CandidateFile) -> Path:
        """Return a local path holding the candidate's bytes."""
        pass

    async def archive(self, candidate: CandidateFile, state: TerminalState) -> Optional[str]:
        """Move the original on the source side. Local files are routed by the pipeline."""
        return None

    async def close(self) -> None:
        pass


class LocalFolderSource(DocumentSource):
    """A directory on the local filesystem."""

    kind = SourceKind.LOCAL

    def __init__(self, folder: Path):
        self.folder = Path(folder)

    async def list_candidates(self) -> List[CandidateFile]:
        if not self.folder.exists():
            raise SourceError(f"Inbound folder does not exist: {self.folder}")
        return await asyncio.to_thread(self._list)

    def _list(self) -> List[CandidateFile]:
        candidates = []
        with os.scandir(self.folder) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if not entry.is_file() or entry.name.startswith("."):
                    continue
                stat = entry.stat()
                candidates.append(CandidateFile(
                    source_path=entry.path,
                    display_name=entry.name,
                    size_bytes=stat.st_size,
                    mtime=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        return candidates

    async def fetch(self, candidate: CandidateFile) -> Path:
        return Path(candidate.source_path)


class RemoteSource(DocumentSource):
    """
    Shared behaviour of FTP and SFTP sources.

    ``folders`` maps terminal states to remote archive roots; files are
    archived under ``{root}/{YYYY-MM-DD}/``.
    """

    is_remote = True

    def __init__(
        self,
        host: str,
        username: Optional[str],
        password: Optional[str],
        directory: str,
        download_dir: Path,
        port: Optional[int] = None,
        folders: Optional[Dict[str, str]] = None,
    ):
        if not host:
            raise ConfigurationError("Remote source host is not configured")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.directory = directory or "/"
        self.download_dir = Path(download_dir)
        self.folders = folders or {
            TerminalState.PROCESSED.value: posixpath.join(self.directory, "Processed"),
            TerminalState.DUPLICATE.value: posixpath.join(self.directory, "Processed", "Duplicates"),
            TerminalState.FAILED.value: posixpath.join(self.directory, "Failed"),
        }

    def remote_path(self, name: str) -> str:
        return posixpath.join(self.directory, name)

    def local_target(self, candidate: CandidateFile) -> Path:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        ext = os.path.splitext(candidate.display_name)[1]
        return self.download_dir / f"{uuid4()}{ext}"

    async def archive(self, candidate: CandidateFile, state: TerminalState) -> Optional[str]:
        now = utc_now()
        folder = posixpath.join(self.folders[state.value], dated_folder(now))
        destination = posixpath.join(folder, candidate.display_name)
        try:
            return await asyncio.to_thread(
                self._move, candidate.source_path, folder, destination, now
            )
        except Exception as e:
            raise SourceError(f"Failed to archive {candidate.display_name}: {e}") from e

    @abstractmethod
    def _move(self, source: str, folder: str, destination: str, now: datetime) -> str:
        pass


class FtpSource(RemoteSource):
    """FTP (optionally explicit TLS) source using ftplib."""

    kind = SourceKind.FTP

    def __init__(self, *args, secure: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.secure = secure

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP_TLS() if self.secure else ftplib.FTP()
        ftp.connect(self.host, self.port or 21, timeout=30)
        ftp.login(self.username or "anonymous", self.password or "")
        if self.secure:
            ftp.prot_p()
        return ftp

    async def list_candidates(self) -> List[CandidateFile]:
        try:
            return await asyncio.to_thread(self._list)
        except ftplib.all_errors as e:
            raise SourceError(f"FTP listing failed: {e}") from e

    def _list(self) -> List[CandidateFile]:
        ftp = self._connect()
        try:
            candidates = []
            for name, facts in ftp.mlsd(self.directory, facts=["type", "size", "modify"]):
                if facts.get("type") != "file":
                    continue
                modified = facts.get("modify", "19700101000000")[:14]
                candidates.append(CandidateFile(
                    source_path=self.remote_path(name),
                    display_name=name,
                    size_bytes=int(facts.get("size", 0)),
                    mtime=datetime.strptime(modified, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc),
                ))
            return candidates
        finally:
            ftp.quit()

    async def fetch(self, candidate: CandidateFile) -> Path:
        target = self.local_target(candidate)
        try:
            await asyncio.to_thread(self._download, candidate.source_path, target)
        except ftplib.all_errors as e:
            target.unlink(missing_ok=True)
            raise SourceError(f"FTP download failed for {candidate.display_name}: {e}") from e
        return target

    def _download(self, remote: str, target: Path) -> None:
        ftp = self._connect()
        try:
            with open(target, "wb") as f:
                ftp.retrbinary(f"RETR {remote}", f.write)
        finally:
            ftp.quit()

    def _ensure_dir(self, ftp: ftplib.FTP, folder: str) -> None:
        path = ""
        for part in [p for p in folder.split("/") if p]:
            path = f"{path}/{part}"
            try:
                ftp.mkd(path)
            except ftplib.error_perm:
                pass  # already exists

    def _move(self, source: str, folder: str, destination: str, now: datetime) -> str:
        ftp = self._connect()
        try:
            self._ensure_dir(ftp, folder)
            try:
                ftp.rename(source, destination)
            except ftplib.error_perm:
                stem, ext = posixpath.splitext(destination)
                destination = f"{stem}-{int(now.timestamp() * 1000)}{ext}"
                ftp.rename(source, destination)
            return destination
        finally:
            ftp.quit()


class SftpSource(RemoteSource):
    """SFTP source using paramiko."""

    kind = SourceKind.SFTP

    def _connect(self):
        transport = paramiko.Transport((self.host, self.port or 22))
        transport.connect(username=self.username, password=self.password)
        return transport, paramiko.SFTPClient.from_transport(transport)

    async def list_candidates(self) -> List[CandidateFile]:
        try:
            return await asyncio.to_thread(self._list)
        except (paramiko.SSHException, OSError) as e:
            raise SourceError(f"SFTP listing failed: {e}") from e

    def _list(self) -> List[CandidateFile]:
        transport, sftp = self._connect()
        try:
            candidates = []
            for attr in sftp.listdir_attr(self.directory):
                if attr.longname and attr.longname.startswith("d"):
                    continue
                candidates.append(CandidateFile(
                    source_path=self.remote_path(attr.filename),
                    display_name=attr.filename,
                    size_bytes=attr.st_size or 0,
                    mtime=datetime.fromtimestamp(attr.st_mtime or 0, tz=timezone.utc),
                ))
            return sorted(candidates, key=lambda c: c.display_name)
        finally:
            sftp.close()
            transport.close()

    async def fetch(self, candidate: CandidateFile) -> Path:
        target = self.local_target(candidate)
        try:
            await asyncio.to_thread(self._download, candidate.source_path, target)
        except (paramiko.SSHException, OSError) as e:
            target.unlink(missing_ok=True)
            raise SourceError(f"SFTP download failed for {candidate.display_name}: {e}") from e
        return target

    def _download(self, remote: str, target: Path) -> None:
        transport, sftp = self._connect()
        try:
            sftp.get(remote, str(target))
        finally:
            sftp.close()
            transport.close()

    def _move(self, source: str, folder: str, destination: str, now: datetime) -> str:
        transport, sftp = self._connect()
        try:
            path = ""
            for part in [p for p in folder.split("/") if p]:
                path = f"{path}/{part}"
                try:
                    sftp.stat(path)
                except FileNotFoundError:
                    sftp.mkdir(path)
            try:
                sftp.stat(destination)
                stem, ext = posixpath.splitext(destination)
                destination = f"{stem}-{int(now.timestamp() * 1000)}{ext}"
            except FileNotFoundError:
                pass
            sftp.rename(source, destination)
            return destination
        finally:
            sftp.close()
            transport.close()


def source_from_config(config: Dict[str, Any], settings: Settings) -> DocumentSource:
    """
    Build a source from a job's ``sourceConfig`` mapping, falling back to
    the configured remote settings for missing keys.
    """
    protocol = (config.get("protocol") or settings.remote_protocol or "local").lower()
    if protocol == "local":
        return LocalFolderSource(Path(config.get("directory") or settings.inbound_path))

    common = dict(
        host=config.get("host") or settings.remote_host,
        username=config.get("username") or settings.remote_username,
        password=config.get("password") or settings.remote_password,
        directory=config.get("directory") or settings.remote_folder,
        download_dir=settings.download_dir,
        port=config.get("port") or settings.remote_port,
        folders=config.get("folders"),
    )
    if protocol == "ftp":
        return FtpSource(secure=bool(config.get("secure", settings.remote_secure)), **common)
    if protocol == "sftp":
        return SftpSource(**common)
    raise ConfigurationError(f"Unknown source protocol: {protocol}")
