"""
In-memory stand-ins for the Daytona SDK, the language model and the site
analyzer, shaped like the calls the orchestrator and the chat make.
"""

from types import SimpleNamespace

import pytest

from planbox.models import AnalysisResult
from planbox.sandbox import SandboxOrchestrator
from planbox.store import FileBackend, ProjectStore


class FakeFS:
    def __init__(self):
        self.files: dict[str, str] = {}
        self.fail_upload: set[str] = set()

    def upload_file(self, data: bytes, path: str):
        if path in self.fail_upload:
            raise IOError(f"disk full: {path}")
        self.files[path] = data.decode("utf-8")

    def download_file(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path].encode("utf-8")

    def delete_file(self, path: str):
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]


class FakeProcess:
    def __init__(self, responses: dict):
        self.commands: list[str] = []
        self.responses = responses

    def exec(self, command, cwd=None, timeout=None, env=None):
        self.commands.append(command)
        for prefix, (code, output) in self.responses.items():
            if command.startswith(prefix):
                return SimpleNamespace(exit_code=code, result=output)
        if command.startswith("curl"):
            return SimpleNamespace(exit_code=0, result="200")
        return SimpleNamespace(exit_code=0, result="ok")

    def ran(self, prefix: str) -> bool:
        return any(c.startswith(prefix) for c in self.commands)


class FakeSandbox:
    def __init__(self, sandbox_id: str):
        self.id = sandbox_id
        self.responses: dict = {}
        self.fs = FakeFS()
        self.process = FakeProcess(self.responses)

    def create_signed_preview_url(self, port, expires_in_seconds=None):
        return SimpleNamespace(url=f"https://{port}-{self.id}.preview.test?sig=abc")

    def get_preview_link(self, port):
        return SimpleNamespace(url=f"https://{port}-{self.id}.preview.test")


class FakeDaytona:
    def __init__(self):
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.created = 0

    def create(self, params=None, timeout=None):
        self.created += 1
        sandbox = FakeSandbox(f"sbx-{self.created}")
        self.sandboxes[sandbox.id] = sandbox
        return sandbox

    def get(self, sandbox_id):
        if sandbox_id not in self.sandboxes:
            raise Exception(f"Sandbox {sandbox_id} not found")
        return self.sandboxes[sandbox_id]

    def add(self, sandbox_id: str) -> FakeSandbox:
        sandbox = FakeSandbox(sandbox_id)
        self.sandboxes[sandbox_id] = sandbox
        return sandbox


@pytest.fixture
def daytona():
    return FakeDaytona()


@pytest.fixture
def orchestrator(daytona):
    return SandboxOrchestrator(client_factory=lambda: daytona, ready_timeout=0, ready_interval=0)


@pytest.fixture
def store(tmp_path):
    return ProjectStore(FileBackend(str(tmp_path / "store")), "test_projects")


@pytest.fixture
def analysis():
    return AnalysisResult(
        full_html="<main><h1>Acme</h1></main>",
        full_css="body { color: #111; }",
        full_js="console.log('hi')",
        base_url="https://acme.test/",
        title="Acme",
        description="Acme home page",
    )


@pytest.fixture
def stub_analyzer(analysis):
    calls = []

    async def _analyze(url):
        calls.append(url)
        return analysis

    _analyze.calls = calls
    return _analyze


def make_llm(reply: str):
    calls = []

    async def _llm(contents, model=None, apply_mode=False):
        calls.append({"contents": contents, "model": model, "apply_mode": apply_mode})
        return reply

    _llm.calls = calls
    return _llm


@pytest.fixture
def llm_factory():
    return make_llm
