"""
Project store: named sets of generated files kept between prompts so a later
plan can be layered on top of earlier output.

All projects live as one JSON list under a single namespaced key. The key/value
backend is a local JSON file by default, or a Supabase table.
"""

from __future__ import annotations

import json
import os

from pydantic import ValidationError

from planbox.config import get_settings
from planbox.models import AnalysisResult, StoredFile, StoredProject, now_ms


KV_TABLE = "kv_store"


class FileBackend:
    """One JSON file per key under `directory`."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def set(self, key: str, value: str):
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, path)

    def remove(self, key: str):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)


class SupabaseBackend:
    """Rows of (key, value) in the `kv_store` table."""

    def __init__(self, url: str, key: str, table: str = KV_TABLE):
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in .env")
        from supabase import create_client
        self._client = create_client(url, key)
        self.table = table

    def get(self, key: str) -> str | None:
        result = self._client.table(self.table).select("value").eq("key", key).execute()
        if not result.data:
            return None
        return result.data[0].get("value")

    def set(self, key: str, value: str):
        self._client.table(self.table).upsert({"key": key, "value": value}).execute()

    def remove(self, key: str):
        self._client.table(self.table).delete().eq("key", key).execute()


class ProjectStore:
    def __init__(self, backend, key: str):
        self.backend = backend
        self.key = key

    def list(self) -> list[StoredProject]:
        """All stored projects. Missing or unreadable data reads as empty."""
        try:
            raw = self.backend.get(self.key)
            if not raw:
                return []
            return [StoredProject.model_validate(p) for p in json.loads(raw)]
        except (ValueError, TypeError, ValidationError, OSError) as e:
            print(f"[store] Error reading projects: {e}")
            return []

    def get(self, name: str) -> StoredProject | None:
        return next((p for p in self.list() if p.name == name), None)

    def get_analysis(self, name: str) -> AnalysisResult | None:
        project = self.get(name)
        return project.analysis if project else None

    def _write(self, projects: list[StoredProject]):
        payload = [p.model_dump(by_alias=True, exclude_none=True) for p in projects]
        self.backend.set(self.key, json.dumps(payload))

    def save(self, name: str, files: dict, dependencies: dict | None = None,
             dev_dependencies: dict | None = None, analysis: AnalysisResult | None = None) -> bool:
        """Insert or replace the project called `name`."""
        try:
            ts = now_ms()
            project = StoredProject(
                name=name,
                files=[StoredFile(path=p, content=c, timestamp=ts) for p, c in files.items()],
                dependencies=dependencies,
                dev_dependencies=dev_dependencies,
                analysis=analysis,
                timestamp=ts,
            )
            projects = self.list()
            for i, existing in enumerate(projects):
                if existing.name == name:
                    projects[i] = project
                    break
            else:
                projects.append(project)
            self._write(projects)
            print(f"[store] Saved project {name} ({len(files)} files)")
            return True
        except Exception as e:
            print(f"[store] Error saving project {name}: {e}")
            return False

    def delete(self, name: str) -> bool:
        try:
            self._write([p for p in self.list() if p.name != name])
            return True
        except Exception as e:
            print(f"[store] Error deleting project {name}: {e}")
            return False

    def clear(self) -> bool:
        try:
            self.backend.remove(self.key)
            return True
        except Exception as e:
            print(f"[store] Error clearing projects: {e}")
            return False


def get_project_store() -> ProjectStore:
    settings = get_settings()
    if settings.store_backend == "supabase":
        backend = SupabaseBackend(settings.supabase_url, settings.supabase_key)
    else:
        backend = FileBackend(settings.store_dir)
    return ProjectStore(backend, settings.storage_key)
