"""
Plan normalizer: turn a parsed model plan into one the orchestrator can
apply without further checks.

  - missing files / delete / commands become empty containers
  - `requestAnalysis` / `writeAnalyzed` actions are expanded into concrete
    files through the site analyzer
  - the protected stylesheet already present in a sandbox is never overwritten
  - a selected stored project can be layered underneath the new plan
"""

import json
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from planbox.errors import PlanParseError
from planbox.models import (
    AnalysisResult,
    InlineWriteAction,
    Plan,
    RequestAnalysisAction,
    UnknownAction,
    WriteAnalyzedAction,
    now_ms,
)
from planbox.templates import (
    ANALYZED_PAGE_TEMPLATE,
    DEFAULT_CSS,
    SUPPORT_FILES,
    TAILWIND_DEV_DEPENDENCIES,
    TAILWIND_DIRECTIVES,
)


Analyzer = Callable[[str], Awaitable[AnalysisResult]]

PROTECTED_STYLESHEET = "app/globals.css"
DEFAULT_PAGE_PATH = "app/page.tsx"
DESIGN_FILE = "design.json"
KNOWN_ACTION_TYPES = ("requestAnalysis", "writeAnalyzed", "write", "inlineWrite")

_PLACEHOLDERS = re.compile(r"__CAPTURED_(?:JS|HTML)__")


@dataclass
class NormalizeResult:
    plan: Plan
    analysis: Optional[AnalysisResult] = None
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Generated sources
# ---------------------------------------------------------------------------

def escape_for_template(s: str) -> str:
    """Escape text for a JS template literal: backslash, backtick, and `${`."""
    return s.replace("\\", "\\\\").replace("`", "\\`").replace("${", "\\${")


def build_page_from_analysis(analysis: AnalysisResult) -> str:
    """Client page that renders the captured markup and re-injects the captured script."""
    values = {
        "__CAPTURED_JS__": escape_for_template(analysis.full_js or ""),
        "__CAPTURED_HTML__": escape_for_template(analysis.full_html or ""),
    }
    # Single pass so captured text that happens to contain a placeholder stays literal
    return _PLACEHOLDERS.sub(lambda m: values[m.group(0)], ANALYZED_PAGE_TEMPLATE)


def build_globals_css_from_analysis(analysis: AnalysisResult) -> str:
    return f"{TAILWIND_DIRECTIVES}\n{analysis.full_css or DEFAULT_CSS}"


def build_design_json(analysis: AnalysisResult) -> str:
    return json.dumps(
        {
            "baseURL": analysis.base_url,
            "title": analysis.title,
            "description": analysis.description,
            "timestamp": now_ms(),
        },
        indent=2,
    )


def _add_support_files(plan: Plan, analysis: AnalysisResult):
    plan.files.update(SUPPORT_FILES)
    plan.dev_dependencies = {**(plan.dev_dependencies or {}), **TAILWIND_DEV_DEPENDENCIES}
    plan.files[DESIGN_FILE] = build_design_json(analysis)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def coerce_plan(raw) -> Plan:
    """Validate a raw dict into a Plan with every container present."""
    if isinstance(raw, Plan):
        return raw.model_copy(deep=True)
    if not isinstance(raw, dict):
        raise PlanParseError(f"Plan must be a JSON object, got {type(raw).__name__}")
    try:
        return Plan.model_validate(raw)
    except ValidationError as e:
        raise PlanParseError(f"Plan does not match the expected shape: {e}") from e


async def normalize_plan(raw, analyzer: Optional[Analyzer] = None) -> NormalizeResult:
    """
    Fill defaults and expand actions. Actions that cannot be resolved are
    reported in `errors` and skipped; the rest of the plan is kept.
    """
    plan = coerce_plan(raw)
    result = NormalizeResult(plan=plan)

    for action in plan.actions:
        if isinstance(action, InlineWriteAction):
            plan.files[action.path] = action.content
            continue

        if isinstance(action, UnknownAction):
            if action.type in KNOWN_ACTION_TYPES:
                result.errors.append(f"{action.type}: malformed action fields, skipped")
            else:
                print(f"  [normalize] Ignoring unknown action type {action.type!r}")
            continue

        if not action.url:
            result.errors.append(f"{action.type}: no URL or inline content, skipped")
            continue
        if analyzer is None:
            result.errors.append(f"{action.type}: no analyzer available for {action.url}, skipped")
            continue

        try:
            analysis = await analyzer(action.url)
        except Exception as e:
            print(f"  [normalize] Analysis of {action.url} failed: {e}")
            result.errors.append(f"{action.type}: analysis of {action.url} failed: {e}")
            continue

        result.analysis = analysis

        if isinstance(action, WriteAnalyzedAction):
            plan.files[action.path or DEFAULT_PAGE_PATH] = build_page_from_analysis(analysis)
            plan.files[PROTECTED_STYLESHEET] = build_globals_css_from_analysis(analysis)
            print(f"  [normalize] Wrote analysed page {action.path} from {action.url}")
        elif isinstance(action, RequestAnalysisAction):
            print(f"  [normalize] Analysed {action.url} (target={action.target})")

        _add_support_files(plan, analysis)

    return result


def drop_protected_files(files: dict, existing_paths) -> tuple[dict, list[str]]:
    """
    Remove writes to protected paths that already exist in the sandbox.
    Returns (files to write, dropped paths).
    """
    existing = set(existing_paths)
    kept = dict(files)
    dropped = []
    for path in (PROTECTED_STYLESHEET,):
        if path in existing and path in kept:
            del kept[path]
            dropped.append(path)
    return kept, dropped


def merge_with_stored(stored_files: dict, plan: Plan) -> Plan:
    """Stored files form the base layer; the new plan's files win on collisions."""
    merged = plan.model_copy(deep=True)
    merged.files = {**stored_files, **plan.files}
    return merged
