import fnmatch
import ftplib
import io
import logging
import posixpath
import re
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Callable, Iterable, Iterator, List, Optional
from urllib.parse import urljoin

import paramiko
import requests

from autolot.config import ConnectorSettings, settings
from autolot.exceptions import ConfigError, SourceConnectionError
from autolot.imports.models import ConnectionSettings, FileFormatSettings, ImportConfig
from autolot.imports.parsers import NumberedRow, parse_rows

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")
RETRYABLE_STATUS = {429, 500, 502, 503, 504}
SFTP_READ_BUFFER = 64 * 1024


class RowStream:
    """
    Lazy rows from one opened source snapshot.
    Owns the transport; use as a context manager. Re-open the source to restart.
    """

    def __init__(
        self,
        source_name: str,
        stream: IO[bytes],
        file_format: FileFormatSettings,
        closers: Iterable[Callable[[], Any]] = (),
        chunk_size: int = 1000,
    ):
        self.source_name = source_name
        self.file_format = file_format
        self._stream = stream
        self._closers = list(closers)
        self._chunk_size = chunk_size
        self._consumed = False

    def __iter__(self) -> Iterator[NumberedRow]:
        if self._consumed:
            raise RuntimeError("RowStream is single-pass; open the source again to restart")
        self._consumed = True
        return parse_rows(self._stream, self.file_format, self._chunk_size)

    def close(self) -> None:
        for closer in [self._stream.close, *reversed(self._closers)]:
            try:
                closer()
            except Exception:
                logger.warning("failed to release source", exc_info=True, extra={"source": self.source_name})
        self._closers = []

    def __enter__(self) -> "RowStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class _ChunkReader(io.RawIOBase):
    """Adapts an iterator of byte chunks (requests iter_content) to a readable stream."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def _pick_file(names: Iterable[str], pattern: str) -> Optional[str]:
    matches = sorted(n for n in names if fnmatch.fnmatch(n, pattern))
    return matches[0] if matches else None


def _archive_name(source_name: str) -> str:
    return f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%S')}_{source_name}"


class SourceConnector:
    kind = "base"

    def __init__(self, connector_settings: Optional[ConnectorSettings] = None, chunk_size: int = 1000):
        self.connector_settings = connector_settings or settings.connectors
        self.chunk_size = chunk_size

    def open(self, config: ImportConfig, source_ref: Optional[str] = None) -> RowStream:
        raise NotImplementedError

    def probe(self, config: ImportConfig) -> dict:
        raise NotImplementedError

    def archive(self, config: ImportConfig, source_name: str, archive_directory: str) -> bool:
        return False

    def _connection(self, config: ImportConfig) -> ConnectionSettings:
        if config.connection is None or config.connection.source_kind != self.kind:
            raise ConfigError(f"Import config {config.id} has no {self.kind} connection settings")
        return config.connection

    @staticmethod
    def _password(conn: ConnectionSettings) -> Optional[str]:
        return conn.password.get_secret_value() if conn.password else None


class LocalFileConnector(SourceConnector):
    """Reads files previously stored in the dealer's upload inbox."""

    kind = "local_upload"

    def __init__(self, upload_dir: Optional[Path] = None, connector_settings: Optional[ConnectorSettings] = None, chunk_size: int = 1000):
        super().__init__(connector_settings, chunk_size)
        self.upload_dir = Path(upload_dir or settings.paths.upload_dir)

    def inbox(self, dealer_id: str) -> Path:
        safe = _SAFE_NAME.sub("_", dealer_id).strip("._")
        if not safe:
            raise ConfigError(f"Invalid dealer id: {dealer_id!r}")
        return self.upload_dir / safe

    def resolve(self, config: ImportConfig, source_ref: Optional[str]) -> Path:
        inbox = self.inbox(config.dealer_id)
        if source_ref is None:
            pattern = config.connection.file_pattern if config.connection else "*"
            pending = self.pending_files(config.dealer_id, pattern)
            if not pending:
                raise SourceConnectionError(f"No files waiting in the inbox of dealer {config.dealer_id}")
            return pending[0]

        candidate = (inbox / source_ref).resolve()
        if candidate.parent != inbox.resolve():
            raise SourceConnectionError(f"Source reference {source_ref!r} is outside the dealer inbox")
        if not candidate.is_file():
            raise SourceConnectionError(f"Uploaded file {source_ref!r} not found")
        return candidate

    def pending_files(self, dealer_id: str, pattern: str = "*") -> List[Path]:
        inbox = self.inbox(dealer_id)
        if not inbox.exists():
            return []
        files = [p for p in inbox.iterdir() if p.is_file() and fnmatch.fnmatch(p.name, pattern)]
        return sorted(files, key=lambda p: (p.stat().st_mtime, p.name))

    def store_upload(self, dealer_id: str, filename: str, content: IO[bytes], max_bytes: Optional[int] = None) -> str:
        inbox = self.inbox(dealer_id)
        inbox.mkdir(parents=True, exist_ok=True)
        safe = _SAFE_NAME.sub("_", Path(filename or "upload").name).strip("._") or "upload"
        name = _archive_name(safe)
        target = inbox / name
        written = 0
        with open(target, "wb") as f:
            for chunk in iter(lambda: content.read(64 * 1024), b""):
                written += len(chunk)
                if max_bytes and written > max_bytes:
                    f.close()
                    target.unlink(missing_ok=True)
                    raise ValueError(f"Upload exceeds {max_bytes} bytes")
                f.write(chunk)
        logger.info("stored upload", extra={"dealer_id": dealer_id, "source_ref": name, "bytes": written})
        return name

    def open(self, config: ImportConfig, source_ref: Optional[str] = None) -> RowStream:
        path = self.resolve(config, source_ref)
        try:
            stream = open(path, "rb")
        except OSError as exc:
            raise SourceConnectionError(f"Cannot open {path.name}: {exc}") from exc
        return RowStream(path.name, stream, config.file_format, chunk_size=self.chunk_size)

    def probe(self, config: ImportConfig) -> dict:
        pattern = config.connection.file_pattern if config.connection else "*"
        pending = self.pending_files(config.dealer_id, pattern)
        return {"ok": True, "source_kind": self.kind, "files": [p.name for p in pending]}

    def archive(self, config: ImportConfig, source_name: str, archive_directory: str) -> bool:
        inbox = self.inbox(config.dealer_id)
        source = inbox / source_name
        target_dir = inbox / archive_directory
        target_dir.mkdir(parents=True, exist_ok=True)
        source.rename(target_dir / _archive_name(source_name))
        return True


class FtpConnector(SourceConnector):
    kind = "ftp"

    def _connect(self, conn: ConnectionSettings) -> ftplib.FTP:
        client = ftplib.FTP_TLS() if conn.use_tls else ftplib.FTP()
        try:
            client.connect(conn.host, conn.resolved_port, timeout=self.connector_settings.timeout_seconds)
            client.login(conn.username or "anonymous", self._password(conn) or "")
            if conn.use_tls:
                client.prot_p()
            client.cwd(conn.remote_directory)
        except ftplib.all_errors as exc:
            client.close()
            raise SourceConnectionError(f"FTP connection to {conn.host} failed: {exc}") from exc
        return client

    @staticmethod
    def _list(client: ftplib.FTP) -> List[str]:
        try:
            return client.nlst()
        except ftplib.error_perm as exc:
            # Some servers answer an empty listing with 550.
            if str(exc).startswith("550"):
                return []
            raise

    def open(self, config: ImportConfig, source_ref: Optional[str] = None) -> RowStream:
        conn = self._connection(config)
        client = self._connect(conn)
        try:
            name = source_ref or _pick_file(self._list(client), conn.file_pattern)
            if not name:
                raise SourceConnectionError(f"No file matching {conn.file_pattern!r} in {conn.remote_directory}")
            sock = client.transfercmd(f"RETR {name}")
        except ftplib.all_errors as exc:
            client.close()
            raise SourceConnectionError(f"Cannot retrieve {source_ref or conn.file_pattern!r}: {exc}") from exc
        except SourceConnectionError:
            client.close()
            raise

        def finish() -> None:
            sock.close()
            try:
                client.voidresp()
                client.quit()
            except ftplib.all_errors:
                client.close()

        return RowStream(name, sock.makefile("rb"), config.file_format, closers=[finish], chunk_size=self.chunk_size)

    def probe(self, config: ImportConfig) -> dict:
        conn = self._connection(config)
        client = self._connect(conn)
        try:
            names = [n for n in self._list(client) if fnmatch.fnmatch(n, conn.file_pattern)]
        except ftplib.all_errors as exc:
            raise SourceConnectionError(f"Cannot list {conn.remote_directory}: {exc}") from exc
        finally:
            client.close()
        return {"ok": True, "source_kind": self.kind, "files": sorted(names)}

    def archive(self, config: ImportConfig, source_name: str, archive_directory: str) -> bool:
        conn = self._connection(config)
        client = self._connect(conn)
        try:
            try:
                client.mkd(archive_directory)
            except ftplib.error_perm:
                pass  # already exists
            client.rename(source_name, posixpath.join(archive_directory, _archive_name(source_name)))
        finally:
            client.close()
        return True


class SftpConnector(SourceConnector):
    kind = "sftp"

    def _connect(self, conn: ConnectionSettings) -> tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        client = paramiko.SSHClient()
        known_hosts = self.connector_settings.sftp_known_hosts
        if known_hosts:
            client.load_host_keys(str(known_hosts))
        else:
            client.load_system_host_keys()
        if self.connector_settings.sftp_auto_add_host_keys:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        password = self._password(conn)
        try:
            client.connect(
                conn.host,
                port=conn.resolved_port,
                username=conn.username,
                password=password,
                timeout=self.connector_settings.timeout_seconds,
                allow_agent=False,
                look_for_keys=password is None,
            )
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SourceConnectionError(f"SFTP connection to {conn.host} failed: {exc}") from exc
        return client, sftp

    def open(self, config: ImportConfig, source_ref: Optional[str] = None) -> RowStream:
        conn = self._connection(config)
        client, sftp = self._connect(conn)
        try:
            name = source_ref or _pick_file(sftp.listdir(conn.remote_directory), conn.file_pattern)
            if not name:
                raise SourceConnectionError(f"No file matching {conn.file_pattern!r} in {conn.remote_directory}")
            # No prefetch: memory stays bounded by the read buffer.
            handle = sftp.open(posixpath.join(conn.remote_directory, name), "rb", bufsize=SFTP_READ_BUFFER)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SourceConnectionError(f"Cannot retrieve {source_ref or conn.file_pattern!r}: {exc}") from exc
        except SourceConnectionError:
            client.close()
            raise
        return RowStream(name, handle, config.file_format, closers=[client.close, sftp.close], chunk_size=self.chunk_size)

    def probe(self, config: ImportConfig) -> dict:
        conn = self._connection(config)
        client, sftp = self._connect(conn)
        try:
            names = [n for n in sftp.listdir(conn.remote_directory) if fnmatch.fnmatch(n, conn.file_pattern)]
        except OSError as exc:
            raise SourceConnectionError(f"Cannot list {conn.remote_directory}: {exc}") from exc
        finally:
            client.close()
        return {"ok": True, "source_kind": self.kind, "files": sorted(names)}

    def archive(self, config: ImportConfig, source_name: str, archive_directory: str) -> bool:
        conn = self._connection(config)
        client, sftp = self._connect(conn)
        try:
            target_dir = posixpath.join(conn.remote_directory, archive_directory)
            try:
                sftp.mkdir(target_dir)
            except OSError:
                pass  # already exists
            sftp.rename(
                posixpath.join(conn.remote_directory, source_name),
                posixpath.join(target_dir, _archive_name(source_name)),
            )
        finally:
            client.close()
        return True


class HttpConnector(SourceConnector):
    """Streams a feed over HTTP(S), retrying transient failures with exponential backoff."""

    kind = "http"

    def _url(self, conn: ConnectionSettings, source_ref: Optional[str]) -> str:
        if source_ref and source_ref.startswith(("http://", "https://")):
            return source_ref
        if conn.url:
            base = conn.url
        else:
            scheme = "https" if conn.use_tls else "http"
            base = f"{scheme}://{conn.host}:{conn.resolved_port}{conn.remote_directory}"
        if not source_ref:
            return base
        if not base.endswith("/"):
            base += "/"
        return urljoin(base, source_ref)

    def _get(self, conn: ConnectionSettings, url: str) -> requests.Response:
        auth = (conn.username, self._password(conn) or "") if conn.username else None
        max_retries = max(1, self.connector_settings.max_retries)
        backoff = self.connector_settings.backoff_seconds
        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            try:
                resp = requests.get(url, auth=auth, stream=True, timeout=self.connector_settings.timeout_seconds)
            except requests.RequestException as exc:  # network failure
                last_error = exc
                if attempt < max_retries - 1:
                    time.sleep(backoff * (2**attempt))
                    continue
                break

            if resp.status_code == 200:
                return resp
            resp.close()
            if resp.status_code in {401, 403}:
                raise SourceConnectionError(f"Authentication rejected by {url}: {resp.status_code}")
            last_error = SourceConnectionError(f"Failed to fetch {url}: {resp.status_code}")
            if attempt < max_retries - 1 and resp.status_code in RETRYABLE_STATUS:
                time.sleep(backoff * (2**attempt))
                continue
            break
        raise SourceConnectionError(f"Failed to fetch {url}: {last_error}") from last_error

    def open(self, config: ImportConfig, source_ref: Optional[str] = None) -> RowStream:
        conn = self._connection(config)
        url = self._url(conn, source_ref)
        resp = self._get(conn, url)
        stream = io.BufferedReader(_ChunkReader(resp.iter_content(chunk_size=64 * 1024)))
        name = posixpath.basename(url.split("?", 1)[0]) or url
        logger.info("streaming http source", extra={"url": url, "config_id": config.id})
        return RowStream(name, stream, config.file_format, closers=[resp.close], chunk_size=self.chunk_size)

    def probe(self, config: ImportConfig) -> dict:
        conn = self._connection(config)
        url = self._url(conn, None)
        resp = self._get(conn, url)
        resp.close()
        return {"ok": True, "source_kind": self.kind, "url": url, "status_code": resp.status_code}


CONNECTORS = {
    LocalFileConnector.kind: LocalFileConnector,
    FtpConnector.kind: FtpConnector,
    SftpConnector.kind: SftpConnector,
    HttpConnector.kind: HttpConnector,
}


def build_connector(
    source_kind: str,
    upload_dir: Optional[Path] = None,
    connector_settings: Optional[ConnectorSettings] = None,
    chunk_size: int = 1000,
) -> SourceConnector:
    cls = CONNECTORS.get(source_kind)
    if cls is None:
        raise ConfigError(f"Unsupported source kind: {source_kind}")
    if cls is LocalFileConnector:
        return cls(upload_dir=upload_dir, connector_settings=connector_settings, chunk_size=chunk_size)
    return cls(connector_settings=connector_settings, chunk_size=chunk_size)
