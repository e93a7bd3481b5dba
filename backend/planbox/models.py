"""
Data model for plans, actions, site analyses and stored projects.

Field aliases keep the camelCase wire format the browser client and the
stored project list use (devDependencies, fullHTML, baseURL, ...).
"""

import json
import time
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Site analysis
# ---------------------------------------------------------------------------

class AnalysisResult(_Model):
    full_html: str = Field("", alias="fullHTML")
    full_css: str = Field("", alias="fullCSS")
    full_js: str = Field("", alias="fullJS")
    base_url: str = Field("", alias="baseURL")
    title: Optional[str] = None
    description: Optional[str] = None

    @field_validator("full_html", "full_css", "full_js", "base_url", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v


# ---------------------------------------------------------------------------
# Plan actions (closed set + an ignored catch-all)
# ---------------------------------------------------------------------------

class RequestAnalysisAction(_Model):
    type: Literal["requestAnalysis"] = "requestAnalysis"
    url: Optional[str] = None
    target: Optional[str] = None


class WriteAnalyzedAction(_Model):
    type: Literal["writeAnalyzed"] = "writeAnalyzed"
    path: str = "app/page.tsx"
    url: Optional[str] = None


class InlineWriteAction(_Model):
    type: Literal["inlineWrite"] = "inlineWrite"
    path: str
    content: str


class UnknownAction(_Model):
    type: str = ""
    raw: dict = Field(default_factory=dict)


Action = Union[RequestAnalysisAction, WriteAnalyzedAction, InlineWriteAction, UnknownAction]


def _build_action(raw: dict) -> Action:
    kind = raw.get("type") or ""
    path = raw.get("path")
    content = raw.get("content")

    # requestAnalysis prefers `url`, writeAnalyzed prefers `fromAnalysisOf`
    if kind == "requestAnalysis":
        return RequestAnalysisAction(url=raw.get("url") or raw.get("fromAnalysisOf"), target=raw.get("target"))

    if kind == "writeAnalyzed":
        url = raw.get("fromAnalysisOf") or raw.get("url")
        if url:
            return WriteAnalyzedAction(path=path or "app/page.tsx", url=url)
        if path and isinstance(content, str):
            return InlineWriteAction(path=path, content=content)
        return WriteAnalyzedAction(path=path or "app/page.tsx", url=None)

    if kind in ("write", "inlineWrite") or (not kind and path and isinstance(content, str)):
        if path and isinstance(content, str):
            return InlineWriteAction(path=path, content=content)

    return UnknownAction(type=str(kind), raw=raw)


def parse_action(raw: Any) -> Action:
    """Map a raw action dict from model output onto one of the known variants.

    A known action with wrongly typed fields degrades to UnknownAction so the
    rest of the plan still applies.
    """
    if isinstance(raw, BaseModel):
        return raw
    if not isinstance(raw, dict):
        return UnknownAction(type="", raw={"value": raw})

    try:
        return _build_action(raw)
    except ValidationError as e:
        print(f"  [plan] Malformed {raw.get('type')!r} action ignored: {e.error_count()} field error(s)")
        return UnknownAction(type=str(raw.get("type") or ""), raw=raw)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def _file_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return str(value)


class Plan(_Model):
    files: dict[str, str] = Field(default_factory=dict)
    delete: list[str] = Field(default_factory=list)
    dependencies: Optional[dict[str, str]] = None
    dev_dependencies: Optional[dict[str, str]] = Field(None, alias="devDependencies")
    commands: list[str] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)

    @field_validator("files", mode="before")
    @classmethod
    def _coerce_files(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("files must be an object of path -> content")
        return {str(k): _file_text(val) for k, val in v.items()}

    @field_validator("delete", "commands", mode="before")
    @classmethod
    def _coerce_str_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if not isinstance(v, list):
            raise ValueError("expected a list of strings")
        return [str(item) for item in v]

    @field_validator("dependencies", "dev_dependencies", mode="before")
    @classmethod
    def _coerce_deps(cls, v):
        if v is None:
            return None
        if not isinstance(v, dict):
            raise ValueError("dependencies must be an object of name -> version")
        return {str(k): str(val) for k, val in v.items()}

    @field_validator("actions", mode="before")
    @classmethod
    def _parse_actions(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        return [parse_action(item) for item in v]

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Stored projects
# ---------------------------------------------------------------------------

class StoredFile(_Model):
    path: str
    content: str
    timestamp: int = 0


class StoredProject(_Model):
    name: str
    files: list[StoredFile] = Field(default_factory=list)
    dependencies: Optional[dict[str, str]] = None
    dev_dependencies: Optional[dict[str, str]] = Field(None, alias="devDependencies")
    analysis: Optional[AnalysisResult] = None
    timestamp: int = 0

    def file_map(self) -> dict[str, str]:
        return {f.path: f.content for f in self.files}
