"""
Chat sessions, the server-side half of the chat panel.

A session remembers the message history, whether replies should be applied
to the sandbox, the design captured from earlier analyses, and the sandbox
the session is working against. `send()` runs one user turn end to end and
yields (event, data) pairs that the HTTP layer streams as SSE.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import AsyncGenerator, Optional

from planbox.errors import PlanParseError
from planbox.models import AnalysisResult
from planbox.plan_extractor import extract_plan_json
from planbox.plan_normalizer import merge_with_stored, normalize_plan


GREETING = (
    "Hi! Ask me anything, or switch on apply mode to get a complete JSON plan "
    "applied to the sandbox."
)

SYSTEM_PLAN_HINT = """You are an expert assistant for building Next.js sites.

NEVER GENERATE CSS FILES
- NEVER generate an "app/globals.css" file
- NEVER generate a "globals.css" file
- NEVER generate any ".css" file
- The CSS styles ALREADY exist in the project
- Use ONLY the existing CSS classes
- globals.css is ALREADY created automatically

Before generating the Next.js files, detect whether the prompt asks to clone a real site or fetch its content.
If so, return a STRICT JSON (see schema below) OR an object with "actions" listing "requestAnalysis" + "writeAnalyzed".

IMPORTANT: Use EXACTLY the file path the user asks for. If they ask for "app/page.tsx", write to "app/page.tsx". If they ask for "app/about/page.tsx", write to "app/about/page.tsx".

Expected JSON schema:
{
  "files": { "<relative path>": "<file content>" },
  "delete": ["<relative path>"],
  "dependencies": { "lib": "version" },
  "devDependencies": { "lib": "version" },
  "commands": ["npm install ..."],
  "actions": [
    { "type": "requestAnalysis", "url": "https://example.com", "target": "page" },
    { "type": "writeAnalyzed", "path": "<path requested by the user>", "fromAnalysisOf": "https://example.com" }
  ]
}

Reply ONLY with valid JSON and nothing else.""".strip()

MAX_CSS_CHARS = 4000
MAX_HTML_CHARS = 2000


def build_design_context(design: Optional[AnalysisResult], max_css_chars: int = MAX_CSS_CHARS) -> Optional[str]:
    """Design-continuity prompt part: captured CSS and an HTML snippet, both truncated."""
    if design is None:
        return None
    css = design.full_css or ""
    if len(css) > max_css_chars:
        css = css[:max_css_chars] + "\n/*...truncated...*/"
    html = design.full_html or ""
    if len(html) > MAX_HTML_CHARS:
        html = html[:MAX_HTML_CHARS] + "...truncated..."
    return f"""DESIGN_CONTEXT:
Reuse the same classes, colors, backgrounds and layout to keep visual continuity across every generated page.

CSS:
{css}

HTML snippet:
{html}"""


def _user_part(text: str) -> dict:
    return {"role": "user", "parts": [{"text": text}]}


@dataclass
class ChatMessage:
    role: str
    text: str


class ConversationSession:
    def __init__(self, session_id: str, model: Optional[str] = None):
        self.id = session_id
        self.model = model
        self.messages: list[ChatMessage] = [ChatMessage("assistant", GREETING)]
        self.apply_mode = False
        self.selected_project = ""
        self.project_name = ""
        self.saved_design: Optional[AnalysisResult] = None
        self.current_analysis: Optional[AnalysisResult] = None
        self.sandbox_id: Optional[str] = None
        self.preview_url: Optional[str] = None

    def _say(self, role: str, text: str) -> tuple[str, dict]:
        msg = ChatMessage(role, text)
        self.messages.append(msg)
        return "message", asdict(msg)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model": self.model,
            "apply_mode": self.apply_mode,
            "selected_project": self.selected_project,
            "project_name": self.project_name,
            "sandbox_id": self.sandbox_id,
            "preview_url": self.preview_url,
            "has_design": self.saved_design is not None,
            "messages": [asdict(m) for m in self.messages],
        }

    def build_contents(self, message: str, store) -> tuple[list, list[str]]:
        """
        Request contents for the model plus assistant notes to show the user.
        In apply mode: plan-schema hint, then design context (a selected stored
        project's analysis takes over as the saved design), then the message.
        """
        contents, notes = [], []
        if self.apply_mode:
            contents.append(_user_part(SYSTEM_PLAN_HINT))

            if self.selected_project:
                stored = store.get_analysis(self.selected_project)
                if stored is not None:
                    self.saved_design = stored
                    notes.append("🎨 Loading stored design for continuity across pages...")

            design_part = build_design_context(self.saved_design)
            if design_part:
                contents.append(_user_part(design_part))
                notes.append("🎨 Global design detected, it will be reused for visual continuity.")

        contents.append(_user_part(message))
        return contents, notes

    async def send(self, message: str, *, llm, analyzer, store, orchestrator) -> AsyncGenerator[tuple[str, dict], None]:
        """
        One user turn. In apply mode the reply is parsed as a plan, normalized,
        merged with the selected stored project and run through the sandbox
        pipeline. Failures end the turn with an error message; the session
        stays usable.
        """
        if not message or not message.strip():
            return

        yield self._say("user", message)

        try:
            contents, notes = self.build_contents(message, store)
            for note in notes:
                yield self._say("assistant", note)

            text = await llm(contents, self.model, self.apply_mode)
            full = text or "[empty response]"
            yield self._say("assistant", full)

            if not self.apply_mode:
                return

            try:
                raw = extract_plan_json(full)
            except PlanParseError as e:
                raise PlanParseError(f"Could not parse the model's JSON plan: {e}") from e

            normalized = await normalize_plan(raw, analyzer)
            for err in normalized.errors:
                yield "warning", {"message": err}
            if normalized.analysis is not None:
                self.saved_design = normalized.analysis
                self.current_analysis = normalized.analysis

            plan = normalized.plan
            combined_with = None
            if self.selected_project:
                project = store.get(self.selected_project)
                if project is not None:
                    plan = merge_with_stored(project.file_map(), plan)
                    combined_with = project.name

            yield "plan", {"plan": plan.to_wire()}

            async for event, data in orchestrator.run_pipeline(plan, self.sandbox_id):
                if event == "sandbox":
                    self.sandbox_id = data["sandbox_id"]
                elif event == "started":
                    self.preview_url = data["url"]
                yield event, data

                if event == "applied" and self.project_name.strip() and plan.files:
                    name = self.project_name.strip()
                    saved = store.save(
                        name,
                        plan.files,
                        plan.dependencies,
                        plan.dev_dependencies,
                        self.current_analysis,
                    )
                    if saved:
                        yield "saved", {"project": name, "files": len(plan.files)}

            if combined_with:
                yield self._say(
                    "assistant",
                    f'✅ Plan combined with the stored files of "{combined_with}" and applied to the sandbox.',
                )
            else:
                yield self._say("assistant", "✅ Plan applied in the sandbox (files written + commands executed).")

        except Exception as e:
            print(f"[chat] Turn failed: {e}")
            yield self._say("assistant", f"❌ Error: {e}")
            yield "error", {"message": str(e), "logs": getattr(e, "logs", "")}


class SessionRegistry:
    """In-memory sessions by id."""

    def __init__(self):
        self._sessions: dict[str, ConversationSession] = {}

    def create(self, model: Optional[str] = None) -> ConversationSession:
        session = ConversationSession(uuid.uuid4().hex, model=model)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(session_id)

    def drop(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None
