"""
Daytona sandbox orchestration. Apply a plan, then install, build and start
the Next.js app and hand back a preview URL.

Lifecycle per apply:  create|connect → write files → install → build → start.
Steps run strictly in order and the sequence stops at the first failure.
The Daytona SDK is synchronous, so every call runs in a worker thread.
"""

import asyncio
import posixpath
import shlex
import weakref
from dataclasses import dataclass, field

from daytona import Daytona, DaytonaConfig, CreateSandboxFromSnapshotParams

from planbox.config import get_settings
from planbox.errors import ConfigurationError, PathEscapeError, SandboxError
from planbox.models import Plan
from planbox.plan_normalizer import PROTECTED_STYLESHEET, drop_protected_files
from planbox.templates import ROOT_LAYOUT, SCAFFOLD_FILES, build_package_json


PROJECT_ROOT = "/home/daytona/app"
APP_PORT = 3000

# Per-call budgets in seconds
CREATE_TIMEOUT = 120
CONNECT_TIMEOUT = 60
INSTALL_TIMEOUT = 300
BUILD_TIMEOUT = 180
FS_TIMEOUT = 60
START_TIMEOUT = 15

# Readiness probe for the started server
READY_TIMEOUT = 60
READY_INTERVAL = 2

# Sandbox auto-stop after N minutes of inactivity (Daytona-managed)
SANDBOX_TTL_MINUTES = 30

INSTALL_COMMAND = "npm install --no-audit --loglevel warn"
BUILD_COMMAND = "npm run build"
START_COMMAND = "npm run start"
LAYOUT_PATH = "app/layout.tsx"


def _get_api_key():
    settings = get_settings()
    api_key = settings.daytona_api_key
    if not api_key:
        raise ConfigurationError("DAYTONA_API_KEY not set")
    return api_key


def get_daytona_client() -> Daytona:
    """Get a configured Daytona client."""
    return Daytona(DaytonaConfig(api_key=_get_api_key()))


def _get_iframe_preview_url(sandbox, port: int) -> str:
    """Signed preview URL (embeds in an iframe without Daytona's interstitial),
    falling back to the plain preview link if signing fails."""
    try:
        signed = sandbox.create_signed_preview_url(port, expires_in_seconds=7200)
        return signed.url if hasattr(signed, "url") else str(signed)
    except Exception:
        preview = sandbox.get_preview_link(port)
        return preview.url


def resolve_project_path(rel_path: str, project_root: str = PROJECT_ROOT) -> str:
    """Absolute sandbox path for a plan-relative path. Rejects anything outside the root."""
    if not isinstance(rel_path, str) or not rel_path.strip():
        raise PathEscapeError("Empty file path")
    rel = rel_path.strip().replace("\\", "/")
    if rel.startswith("/"):
        raise PathEscapeError(f"Absolute paths are not allowed: {rel_path}")
    normalized = posixpath.normpath(rel)
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        raise PathEscapeError(f"Path escapes the project root: {rel_path}")
    return f"{project_root}/{normalized}"


@dataclass
class ApplyResult:
    sandbox_id: str
    files_written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class SandboxOrchestrator:
    """Drives one Daytona account through the plan lifecycle.

    Holds no state besides the client and one lock per sandbox id, so two
    sequences against the same sandbox never interleave.
    """

    def __init__(self, client_factory=None, project_root: str = PROJECT_ROOT,
                 ready_timeout: float = READY_TIMEOUT, ready_interval: float = READY_INTERVAL):
        self._client_factory = client_factory or get_daytona_client
        self._client = None
        self.project_root = project_root
        self.ready_timeout = ready_timeout
        self.ready_interval = ready_interval
        # Entries vanish once no sequence holds or awaits the lock
        self._locks = weakref.WeakValueDictionary()

    def _daytona(self):
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def check_config(self):
        """Raise ConfigurationError now rather than midway through a sequence."""
        self._daytona()

    def lock_for(self, sandbox_id: str) -> asyncio.Lock:
        lock = self._locks.get(sandbox_id)
        if lock is None:
            lock = self._locks[sandbox_id] = asyncio.Lock()
        return lock

    async def _call(self, fn, timeout: float, what: str):
        """Run a blocking SDK call in a thread under a timeout; wrap failures as SandboxError."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout)
        except (SandboxError, ConfigurationError, PathEscapeError):
            raise
        except asyncio.TimeoutError:
            raise SandboxError(f"{what} timed out after {timeout}s")
        except Exception as e:
            raise SandboxError(f"{what} failed: {e}") from e

    # ── create / connect ────────────────────────────────────────────────────

    async def _provision(self):
        def _create():
            params = CreateSandboxFromSnapshotParams(
                language="typescript",
                public=True,
                auto_stop_interval=SANDBOX_TTL_MINUTES,
            )
            return self._daytona().create(params, timeout=CREATE_TIMEOUT)

        print("[sandbox] Creating new sandbox...")
        sandbox = await self._call(_create, timeout=CREATE_TIMEOUT + 5, what="Sandbox creation")
        print(f"[sandbox] Created {sandbox.id}")
        return sandbox

    async def connect(self, sandbox_id: str):
        print(f"[sandbox] Connecting to existing sandbox: {sandbox_id}")
        return await self._call(
            lambda: self._daytona().get(sandbox_id),
            timeout=CONNECT_TIMEOUT,
            what=f"Connecting to sandbox {sandbox_id}",
        )

    async def create_or_connect(self, sandbox_id: str | None = None):
        """Returns (sandbox, sandbox_id). No id means a brand-new sandbox."""
        if not sandbox_id:
            sandbox = await self._provision()
            return sandbox, sandbox.id
        sandbox = await self.connect(sandbox_id)
        return sandbox, sandbox_id

    async def create(self) -> str:
        """Create a sandbox holding the default Next.js scaffold. Returns its id."""
        sandbox = await self._provision()
        scaffold = {"package.json": build_package_json(), **SCAFFOLD_FILES}
        await self._write_files(sandbox, scaffold)
        print("[sandbox] Default Next.js structure created")
        return sandbox.id

    # ── filesystem ──────────────────────────────────────────────────────────

    async def _exists(self, sandbox, rel_path: str) -> bool:
        full_path = resolve_project_path(rel_path, self.project_root)

        def _probe():
            try:
                sandbox.fs.download_file(full_path)
                return True
            except Exception:
                return False

        return await self._call(_probe, timeout=FS_TIMEOUT, what=f"Checking {rel_path}")

    async def _write_files(self, sandbox, files: dict) -> list[str]:
        """Write every file; all writes are attempted before any failure is raised."""
        targets = {fp: resolve_project_path(fp, self.project_root) for fp in files}

        def _upload():
            written, failed = [], []
            for fp, full_path in targets.items():
                try:
                    dir_path = posixpath.dirname(full_path)
                    sandbox.process.exec(f"mkdir -p {shlex.quote(dir_path)}", timeout=10)
                    sandbox.fs.upload_file(str(files[fp]).encode("utf-8"), full_path)
                    written.append(fp)
                    print(f"[sandbox] Wrote {fp}")
                except Exception as e:
                    print(f"[sandbox] Failed to write {fp}: {e}")
                    failed.append(f"{fp}: {e}")
            return written, failed

        written, failed = await self._call(_upload, timeout=FS_TIMEOUT + 5 * len(targets), what="Writing files")
        if failed:
            raise SandboxError(f"Failed to write {len(failed)} file(s)", logs="\n".join(failed))
        return written

    async def _delete_paths(self, sandbox, paths: list[str]) -> list[str]:
        """Best effort: a failed delete is logged and the rest carry on."""
        deleted = []
        for p in paths:
            full_path = resolve_project_path(p, self.project_root)
            try:
                await self._call(lambda fp=full_path: sandbox.fs.delete_file(fp),
                                 timeout=FS_TIMEOUT, what=f"Deleting {p}")
                deleted.append(p)
                print(f"[sandbox] Deleted {p}")
            except SandboxError as e:
                print(f"[sandbox] Could not delete {p}: {e}")
        return deleted

    # ── apply ───────────────────────────────────────────────────────────────

    def check_paths(self, plan: Plan):
        """Confine every plan path to the project root; runs before any sandbox is created or touched."""
        for p in [*plan.files, *plan.delete]:
            resolve_project_path(p, self.project_root)

    async def _apply(self, sandbox, sandbox_id: str, plan: Plan) -> ApplyResult:
        has_stylesheet = await self._exists(sandbox, PROTECTED_STYLESHEET)
        if has_stylesheet:
            print(f"[sandbox] Existing {PROTECTED_STYLESHEET} detected, it will be kept")

        base = {"package.json": build_package_json(plan.dependencies, plan.dev_dependencies)}
        if LAYOUT_PATH not in plan.files:
            base[LAYOUT_PATH] = ROOT_LAYOUT
        await self._write_files(sandbox, base)

        deleted = await self._delete_paths(sandbox, plan.delete)

        existing = [PROTECTED_STYLESHEET] if has_stylesheet else []
        files, skipped = drop_protected_files(plan.files, existing)
        written = await self._write_files(sandbox, files) if files else []

        return ApplyResult(sandbox_id=sandbox_id, files_written=written, deleted=deleted, skipped=skipped)

    async def apply_plan(self, plan: Plan, sandbox_id: str | None = None) -> ApplyResult:
        self.check_paths(plan)
        sandbox, sid = await self.create_or_connect(sandbox_id)
        async with self.lock_for(sid):
            return await self._apply(sandbox, sid, plan)

    # ── commands ────────────────────────────────────────────────────────────

    async def _run(self, sandbox, command: str, timeout: int, what: str) -> str:
        """Run a command in the project root; non-zero exit raises with the captured output."""
        result = await self._call(
            lambda: sandbox.process.exec(command, cwd=self.project_root, timeout=timeout),
            timeout=timeout + 10,
            what=what,
        )
        output = result.result or ""
        if result.exit_code != 0:
            raise SandboxError(f"{what} failed (exit code {result.exit_code})", logs=output)
        print(f"[sandbox] {what} completed")
        return output

    async def _install(self, sandbox) -> str:
        return await self._run(sandbox, INSTALL_COMMAND, INSTALL_TIMEOUT, "Install")

    async def _build(self, sandbox) -> str:
        return await self._run(sandbox, BUILD_COMMAND, BUILD_TIMEOUT, "Build")

    async def _tail_log(self, sandbox, lines: int = 100) -> str:
        log_file = f"{self.project_root}/server.log"
        result = await self._call(
            lambda: sandbox.process.exec(f"tail -{lines} {log_file} 2>/dev/null || echo 'No logs yet'", timeout=15),
            timeout=20,
            what="Reading server log",
        )
        return result.result or ""

    async def _wait_until_ready(self, sandbox):
        """Poll the app port inside the sandbox until it answers 2xx/3xx."""
        probe = f"curl -s -o /dev/null -w '%{{http_code}}' http://localhost:{APP_PORT}/"
        waited = 0.0
        while True:
            try:
                result = await self._call(
                    lambda: sandbox.process.exec(probe, timeout=10), timeout=15, what="Readiness probe"
                )
                code = int((result.result or "0").strip() or 0)
                if 200 <= code < 400:
                    print(f"[sandbox] Server ready after {waited:.0f}s (HTTP {code})")
                    return
            except (SandboxError, ValueError):
                pass
            if waited >= self.ready_timeout:
                break
            await asyncio.sleep(self.ready_interval)
            waited += self.ready_interval or 1

        logs = await self._tail_log(sandbox)
        raise SandboxError(f"Server did not become ready within {self.ready_timeout}s", logs=logs)

    async def _start(self, sandbox) -> str:
        log_file = f"{self.project_root}/server.log"
        # Long-running server: launched detached, readiness is observed by probing
        await self._call(
            lambda: sandbox.process.exec(
                f"nohup {START_COMMAND} > {log_file} 2>&1 &", cwd=self.project_root, timeout=START_TIMEOUT
            ),
            timeout=START_TIMEOUT + 5,
            what="Starting server",
        )
        await self._wait_until_ready(sandbox)
        url = await self._call(lambda: _get_iframe_preview_url(sandbox, APP_PORT),
                               timeout=CONNECT_TIMEOUT, what="Resolving preview URL")
        print(f"[sandbox] Server started at: {url}")
        return url

    async def install(self, sandbox_id: str) -> str:
        sandbox = await self.connect(sandbox_id)
        async with self.lock_for(sandbox_id):
            return await self._install(sandbox)

    async def build(self, sandbox_id: str) -> str:
        sandbox = await self.connect(sandbox_id)
        async with self.lock_for(sandbox_id):
            return await self._build(sandbox)

    async def start(self, sandbox_id: str) -> str:
        sandbox = await self.connect(sandbox_id)
        async with self.lock_for(sandbox_id):
            return await self._start(sandbox)

    async def logs(self, sandbox_id: str, lines: int = 100) -> str:
        sandbox = await self.connect(sandbox_id)
        return await self._tail_log(sandbox, lines)

    # ── full sequence ───────────────────────────────────────────────────────

    async def run_pipeline(self, plan: Plan, sandbox_id: str | None = None):
        """
        Apply → install → build → start, yielding (event, data) after each step.
        Any failure raises out of the generator and later steps never run.
        """
        self.check_paths(plan)
        sandbox, sid = await self.create_or_connect(sandbox_id)
        yield "sandbox", {"sandbox_id": sid}

        async with self.lock_for(sid):
            applied = await self._apply(sandbox, sid, plan)
            yield "applied", {
                "sandbox_id": sid,
                "files_written": applied.files_written,
                "deleted": applied.deleted,
                "skipped": applied.skipped,
            }

            yield "step", {"step": "install", "message": "Installing dependencies..."}
            yield "install", {"logs": await self._install(sandbox)}

            yield "step", {"step": "build", "message": "Building..."}
            yield "build", {"logs": await self._build(sandbox)}

            yield "step", {"step": "start", "message": "Starting server..."}
            url = await self._start(sandbox)
            yield "started", {"sandbox_id": sid, "url": url}
