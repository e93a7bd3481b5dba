import asyncio
import gc
import json

import pytest

from planbox.errors import ConfigurationError, PathEscapeError, SandboxError
from planbox.models import Plan
from planbox.sandbox import PROJECT_ROOT, SandboxOrchestrator, resolve_project_path


def _run(coro):
    return asyncio.run(coro)


async def _collect(agen):
    events = []
    async for event, data in agen:
        events.append((event, data))
    return events


# ── path confinement ────────────────────────────────────────────────────────

def test_resolve_project_path_joins_under_root():
    assert resolve_project_path("app/page.tsx") == f"{PROJECT_ROOT}/app/page.tsx"
    assert resolve_project_path("./app//about/../page.tsx") == f"{PROJECT_ROOT}/app/page.tsx"


@pytest.mark.parametrize("bad", ["", "   ", "/etc/passwd", "../outside.txt", "app/../../x", ".."])
def test_resolve_project_path_rejects_escapes(bad):
    with pytest.raises(PathEscapeError):
        resolve_project_path(bad)


# ── create / connect ────────────────────────────────────────────────────────

def test_create_writes_default_scaffold(orchestrator, daytona):
    sid = _run(orchestrator.create())
    files = daytona.sandboxes[sid].fs.files
    package = json.loads(files[f"{PROJECT_ROOT}/package.json"])
    assert package["dependencies"]["next"] == "14.2.3"
    assert package["scripts"]["start"].startswith("next start")
    assert f"{PROJECT_ROOT}/app/layout.tsx" in files
    assert f"{PROJECT_ROOT}/app/page.tsx" in files


def test_create_or_connect_distinguishes_new_and_existing(orchestrator, daytona):
    existing = daytona.add("sbx-existing")
    sandbox, sid = _run(orchestrator.create_or_connect("sbx-existing"))
    assert sandbox is existing and sid == "sbx-existing"
    assert daytona.created == 0

    sandbox, sid = _run(orchestrator.create_or_connect(None))
    assert daytona.created == 1
    assert sid == sandbox.id


def test_connect_to_unknown_sandbox_fails(orchestrator):
    with pytest.raises(SandboxError):
        _run(orchestrator.connect("nope"))


def test_missing_credentials_surface_as_configuration_error():
    def no_key():
        raise ConfigurationError("DAYTONA_API_KEY not set")

    orch = SandboxOrchestrator(client_factory=no_key)
    with pytest.raises(ConfigurationError):
        orch.check_config()
    with pytest.raises(ConfigurationError):
        _run(orch.apply_plan(Plan(), None))


# ── apply ───────────────────────────────────────────────────────────────────

def test_apply_plan_writes_package_json_layout_and_files(orchestrator, daytona):
    plan = Plan(
        files={"app/page.tsx": "home", "components/Nav.tsx": "nav"},
        dependencies={"framer-motion": "^11"},
        dev_dependencies={"tailwindcss": "^3.4.0"},
    )
    result = _run(orchestrator.apply_plan(plan))
    files = daytona.sandboxes[result.sandbox_id].fs.files

    package = json.loads(files[f"{PROJECT_ROOT}/package.json"])
    assert package["dependencies"]["framer-motion"] == "^11"
    assert package["dependencies"]["react"] == "18.2.0"
    assert package["devDependencies"] == {"tailwindcss": "^3.4.0"}
    assert files[f"{PROJECT_ROOT}/app/layout.tsx"].startswith("export default function RootLayout")
    assert files[f"{PROJECT_ROOT}/components/Nav.tsx"] == "nav"
    assert sorted(result.files_written) == ["app/page.tsx", "components/Nav.tsx"]


def test_apply_plan_keeps_plan_layout(orchestrator, daytona):
    result = _run(orchestrator.apply_plan(Plan(files={"app/layout.tsx": "custom layout"})))
    files = daytona.sandboxes[result.sandbox_id].fs.files
    assert files[f"{PROJECT_ROOT}/app/layout.tsx"] == "custom layout"


def test_existing_stylesheet_survives_apply(orchestrator, daytona):
    sandbox = daytona.add("sbx-styled")
    css_path = f"{PROJECT_ROOT}/app/globals.css"
    sandbox.fs.files[css_path] = "/* user styles */"

    plan = Plan(files={"app/globals.css": "/* model styles */", "app/page.tsx": "home"})
    result = _run(orchestrator.apply_plan(plan, "sbx-styled"))

    assert sandbox.fs.files[css_path] == "/* user styles */"
    assert result.skipped == ["app/globals.css"]
    assert result.files_written == ["app/page.tsx"]


def test_stylesheet_written_when_absent(orchestrator, daytona):
    result = _run(orchestrator.apply_plan(Plan(files={"app/globals.css": "body{}"})))
    files = daytona.sandboxes[result.sandbox_id].fs.files
    assert files[f"{PROJECT_ROOT}/app/globals.css"] == "body{}"
    assert result.skipped == []


def test_deletes_are_best_effort(orchestrator, daytona):
    sandbox = daytona.add("sbx-del")
    sandbox.fs.files[f"{PROJECT_ROOT}/app/old.tsx"] = "old"

    plan = Plan(files={"app/page.tsx": "home"}, delete=["app/missing.tsx", "app/old.tsx"])
    result = _run(orchestrator.apply_plan(plan, "sbx-del"))

    assert result.deleted == ["app/old.tsx"]
    assert f"{PROJECT_ROOT}/app/old.tsx" not in sandbox.fs.files
    assert sandbox.fs.files[f"{PROJECT_ROOT}/app/page.tsx"] == "home"


def test_escaping_path_is_rejected_before_any_write(orchestrator, daytona):
    sandbox = daytona.add("sbx-safe")
    plan = Plan(files={"app/page.tsx": "home", "../../etc/cron.d/x": "boom"})
    with pytest.raises(PathEscapeError):
        _run(orchestrator.apply_plan(plan, "sbx-safe"))
    assert sandbox.fs.files == {}


def test_write_failure_reported_after_all_writes_attempted(orchestrator, daytona):
    sandbox = daytona.add("sbx-full")
    sandbox.fs.fail_upload.add(f"{PROJECT_ROOT}/app/a.tsx")
    plan = Plan(files={"app/a.tsx": "a", "app/b.tsx": "b"})

    with pytest.raises(SandboxError) as exc:
        _run(orchestrator.apply_plan(plan, "sbx-full"))
    assert "app/a.tsx" in exc.value.logs
    assert sandbox.fs.files[f"{PROJECT_ROOT}/app/b.tsx"] == "b"


# ── commands ────────────────────────────────────────────────────────────────

def test_install_returns_output(orchestrator, daytona):
    sandbox = daytona.add("sbx-i")
    sandbox.responses["npm install"] = (0, "added 312 packages")
    assert _run(orchestrator.install("sbx-i")) == "added 312 packages"


def test_build_failure_carries_output(orchestrator, daytona):
    sandbox = daytona.add("sbx-b")
    sandbox.responses["npm run build"] = (1, "Type error: x is not defined")
    with pytest.raises(SandboxError) as exc:
        _run(orchestrator.build("sbx-b"))
    assert "Type error" in exc.value.logs


def test_start_launches_detached_and_returns_preview_url(orchestrator, daytona):
    sandbox = daytona.add("sbx-s")
    url = _run(orchestrator.start("sbx-s"))
    assert url.startswith("https://3000-sbx-s.preview.test")
    assert sandbox.process.ran("nohup npm run start")
    assert sandbox.process.ran("curl")


def test_start_fails_when_server_never_becomes_ready(orchestrator, daytona):
    sandbox = daytona.add("sbx-down")
    sandbox.responses["curl"] = (0, "000")
    sandbox.responses["tail"] = (0, "Error: Cannot find module 'next'")
    with pytest.raises(SandboxError) as exc:
        _run(orchestrator.start("sbx-down"))
    assert "Cannot find module" in exc.value.logs


def test_logs_tail_server_log(orchestrator, daytona):
    sandbox = daytona.add("sbx-log")
    sandbox.responses["tail"] = (0, "ready on 3000")
    assert _run(orchestrator.logs("sbx-log", lines=50)) == "ready on 3000"
    assert sandbox.process.commands[-1].startswith("tail -50 ")


# ── pipeline ────────────────────────────────────────────────────────────────

def test_pipeline_runs_steps_in_order(orchestrator, daytona):
    events = _run(_collect(orchestrator.run_pipeline(Plan(files={"app/page.tsx": "home"}))))
    names = [e for e, _ in events if e != "step"]
    assert names == ["sandbox", "applied", "install", "build", "started"]
    started = events[-1][1]
    assert started["url"].startswith("https://3000-")
    assert started["sandbox_id"] == events[0][1]["sandbox_id"]


def test_failing_install_stops_build_and_start(orchestrator, daytona):
    sandbox = daytona.add("sbx-fail")
    sandbox.responses["npm install"] = (1, "npm ERR! 404 Not Found")

    seen = []

    async def consume():
        async for event, _ in orchestrator.run_pipeline(Plan(files={"app/page.tsx": "x"}), "sbx-fail"):
            seen.append(event)

    with pytest.raises(SandboxError) as exc:
        _run(consume())

    assert "npm ERR!" in exc.value.logs
    assert "applied" in seen
    assert "build" not in seen and "started" not in seen
    assert not sandbox.process.ran("npm run build")
    assert not sandbox.process.ran("nohup")


def test_same_sandbox_shares_one_lock(orchestrator):
    assert orchestrator.lock_for("a") is orchestrator.lock_for("a")
    assert orchestrator.lock_for("a") is not orchestrator.lock_for("b")


def test_overlapping_applies_to_one_sandbox_are_serialized(orchestrator, daytona):
    daytona.add("sbx-busy")
    order = []

    async def scenario():
        lock = orchestrator.lock_for("sbx-busy")

        async def holder():
            async with lock:
                order.append("holder-start")
                await asyncio.sleep(0.05)
                order.append("holder-end")

        async def applier():
            await asyncio.sleep(0.01)
            await orchestrator.apply_plan(Plan(files={"a.txt": "a"}), "sbx-busy")
            order.append("apply-done")

        await asyncio.gather(holder(), applier())

    _run(scenario())
    assert order == ["holder-start", "holder-end", "apply-done"]


def test_escaping_path_never_provisions_a_sandbox(orchestrator, daytona):
    plan = Plan(files={"app/page.tsx": "home"}, delete=["/etc/hosts"])
    with pytest.raises(PathEscapeError):
        _run(orchestrator.apply_plan(plan))
    with pytest.raises(PathEscapeError):
        _run(_collect(orchestrator.run_pipeline(plan)))
    assert daytona.created == 0
    assert daytona.sandboxes == {}


def test_lock_entries_are_released_after_use(orchestrator, daytona):
    daytona.add("sbx-once")
    _run(orchestrator.apply_plan(Plan(files={"a.txt": "a"}), "sbx-once"))
    _run(_collect(orchestrator.run_pipeline(Plan(files={"a.txt": "b"}), "sbx-once")))
    gc.collect()
    assert "sbx-once" not in orchestrator._locks
