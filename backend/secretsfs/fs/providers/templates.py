from __future__ import annotations

import os
import re
import stat
from pathlib import Path

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from secretsfs.errors import (
    FsError,
    InvalidArgument,
    IsDirectory,
    NotDirectory,
    NotFound,
    PermissionDenied,
    RemoteIOError,
    ResourceBusy,
)
from secretsfs.fs.types import DIR_MODE, FILE_MODE, Attrs, DirEntry, dir_attrs, file_attrs
from secretsfs.identity import CallerIdentity
from secretsfs.logging.ndjson import log_event
from secretsfs.store.base import Store


# Existing templates use the Go spelling `{{ .Get "path" }}`; inside an action
# it is rewritten to the Jinja2 call `Get("path")`.
_ACTION = re.compile(r"\{\{(.*?)\}\}", re.S)
_DOT_GET = re.compile(r'\.Get\s+("(?:[^"\\]|\\.)*")')


def rewrite_dot_calls(text: str) -> str:
    return _ACTION.sub(lambda m: "{{" + _DOT_GET.sub(r"Get(\1)", m.group(1)) + "}}", text)


class SecretFetchError(RuntimeError):
    def __init__(self, secret_path: str, error: FsError) -> None:
        self.secret_path = secret_path
        self.error = error
        super().__init__(f"Cannot load secret {secret_path}: {type(error).__name__}")


class TemplateContext:
    """
    Per-render context. `get` is the only thing a template can reach, and it
    always fetches as the identity that opened the file.
    """

    def __init__(self, store: Store, identity: CallerIdentity, flags: int) -> None:
        self._store = store
        self.identity = identity
        self.flags = flags

    def get(self, secret_path: str) -> str:
        try:
            content = self._store.open(str(secret_path), self.flags, self.identity)
        except FsError as e:
            log_event(
                level="warning",
                event="templates.get_failed",
                uid=self.identity.uid,
                data={"secretPath": secret_path, "status": type(e).__name__},
            )
            raise SecretFetchError(str(secret_path), e) from e
        return content.decode("utf-8", errors="replace")


def _safe_join(root: Path, subpath: str) -> Path:
    candidate = (root / subpath).resolve()
    try:
        common = os.path.commonpath([str(root), str(candidate)])
    except ValueError as e:
        raise NotFound(f"Invalid path: {e}") from e
    if Path(common) != root:
        raise NotFound("Path escapes template root")
    return candidate


class TemplatesProvider:
    """
    Local template files under /templates, rendered with secrets on open.
    """

    namespace = "templates"

    def __init__(self, store: Store, templates_path: Path) -> None:
        self._store = store
        self._root = Path(templates_path).expanduser().resolve()
        self._env = SandboxedEnvironment(
            autoescape=False,
            keep_trailing_newline=True,
            undefined=jinja2.StrictUndefined,
        )

    def _local(self, path: str) -> Path:
        return _safe_join(self._root, path.strip("/"))

    def _stat(self, path: str) -> tuple[Path, os.stat_result]:
        p = self._local(path)
        try:
            return p, p.stat()
        except OSError as e:
            raise NotFound(f"No template entry {path}: {e}") from e

    def attributes(self, path: str, identity: CallerIdentity) -> Attrs:
        _ = identity
        if not path.strip("/"):
            return dir_attrs()
        _p, st = self._stat(path)
        if stat.S_ISDIR(st.st_mode):
            return dir_attrs()
        if stat.S_ISREG(st.st_mode):
            # size is unknown until rendered
            return file_attrs(0)
        raise InvalidArgument(f"Unsupported file type for {path}")

    def list(self, path: str, identity: CallerIdentity) -> list[DirEntry]:
        _ = identity
        p, st = self._stat(path)
        if not stat.S_ISDIR(st.st_mode):
            raise NotDirectory(f"Not a directory: {path}")
        entries: list[DirEntry] = []
        try:
            with os.scandir(p) as it:
                for child in it:
                    if child.is_dir():
                        entries.append(DirEntry(name=child.name, mode=DIR_MODE))
                    elif child.is_file():
                        entries.append(DirEntry(name=child.name, mode=FILE_MODE))
        except OSError as e:
            raise ResourceBusy(f"Cannot list {path}: {e}") from e
        return sorted(entries, key=lambda e: e.name)

    def open(self, path: str, flags: int, identity: CallerIdentity) -> bytes:
        p, st = self._stat(path)
        if not stat.S_ISREG(st.st_mode):
            raise IsDirectory(f"Not a regular file: {path}")
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ResourceBusy(f"Cannot read template {path}: {e}") from e
        except UnicodeDecodeError as e:
            raise RemoteIOError(f"Template {path} is not UTF-8: {e}") from e

        try:
            template = self._env.from_string(rewrite_dot_calls(text))
        except jinja2.TemplateSyntaxError as e:
            log_event(level="error", event="templates.parse_failed", uid=identity.uid, path=path, data={"error": str(e)})
            raise RemoteIOError(f"Cannot parse template {path}: {e}") from e

        ctx = TemplateContext(self._store, identity, flags)
        try:
            rendered = template.render(Get=ctx.get)
        except SecretFetchError as e:
            if isinstance(e.error, PermissionDenied):
                raise PermissionDenied(f"No access to {e.secret_path} while rendering {path}") from e
            raise RemoteIOError(f"Rendering {path} failed: {e}") from e
        except Exception as e:  # noqa: BLE001
            log_event(level="error", event="templates.render_failed", uid=identity.uid, path=path, data={"error": str(e)})
            raise RemoteIOError(f"Rendering {path} failed: {e}") from e
        return rendered.encode("utf-8")
