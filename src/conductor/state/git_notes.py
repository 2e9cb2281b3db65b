from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from conductor.errors import StateStoreError
from conductor.models import utcnow_iso

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".conductor"


class GitNotesStore:
    """Versioned JSON namespaces persisted in git notes, a state branch or local files.

    Every namespace is wrapped in an envelope carrying a revision number.
    ``update_json`` is the read-modify-write primitive: the updater runs on the
    current data and the write is rejected if another writer bumped the revision
    in between, in which case the updater is re-run on fresh data.
    """

    NAMESPACES = {
        "queue",
        "checkpoints",
        "learnings",
        "escalations",
        "context",
        "metrics",
        "runs",
        "leases",
    }
    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 8

    def __init__(
        self,
        repo_root: Path,
        *,
        backend_mode: str = "notes",
        branch_ref: str = "conductor/state",
    ) -> None:
        if backend_mode not in {"notes", "branch", "local"}:
            raise StateStoreError(f"Unsupported state backend mode: {backend_mode}")
        self.repo_root = repo_root.resolve()
        self.local_state_dir = self.repo_root / STATE_DIRNAME / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        self.anchor_file = self.repo_root / STATE_DIRNAME / "anchor"
        self.lock_file = self.local_state_dir / ".lock"
        self._branch_ref = branch_ref
        self._git_repo_available = self._is_git_repo()
        if backend_mode == "local" or not self._git_repo_available:
            self._backend_mode = "local"
        else:
            self._backend_mode = backend_mode

    @property
    def git_enabled(self) -> bool:
        return self._backend_mode in {"notes", "branch"} and self._git_repo_available

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            input=input_text,
            env=env,
        )
        if check and proc.returncode != 0:
            raise StateStoreError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @classmethod
    def _validate_namespace(cls, namespace: str) -> None:
        if namespace not in cls.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    @staticmethod
    def _notes_ref(namespace: str) -> str:
        return f"refs/notes/conductor/{namespace}"

    def _state_branch_ref(self) -> str:
        if self._branch_ref.startswith("refs/"):
            return self._branch_ref
        return f"refs/heads/{self._branch_ref}"

    def _anchor_object(self) -> str:
        if self.anchor_file.exists():
            return self.anchor_file.read_text(encoding="utf-8").strip()
        anchor = self._run_git(
            ["hash-object", "-w", "--stdin"],
            input_text="conductor-state-anchor\n",
        ).stdout.strip()
        self.anchor_file.parent.mkdir(parents=True, exist_ok=True)
        self.anchor_file.write_text(anchor, encoding="utf-8")
        return anchor

    # notes backend

    def _read_notes(self, namespace: str) -> str | None:
        proc = self._run_git(
            ["notes", "--ref", self._notes_ref(namespace), "show", self._anchor_object()],
            check=False,
        )
        if proc.returncode != 0:
            return None
        return proc.stdout

    def _write_notes(self, namespace: str, serialized: str) -> None:
        self._run_git(
            [
                "notes",
                "--ref",
                self._notes_ref(namespace),
                "add",
                "-f",
                "-m",
                serialized,
                self._anchor_object(),
            ]
        )

    # branch backend

    def _read_branch(self, namespace: str) -> str | None:
        proc = self._run_git(
            ["show", f"{self._state_branch_ref()}:{namespace}.json"],
            check=False,
        )
        if proc.returncode != 0:
            return None
        return proc.stdout

    def _write_branch(self, namespace: str, serialized: str) -> None:
        ref = self._state_branch_ref()
        parent_commit: str | None = None
        parent_tree: str | None = None
        exists = self._run_git(["show-ref", "--verify", "--quiet", ref], check=False)
        if exists.returncode == 0:
            parent_commit = self._run_git(["rev-parse", ref]).stdout.strip()
            parent_tree = self._run_git(["rev-parse", f"{parent_commit}^{{tree}}"]).stdout.strip()

        with tempfile.NamedTemporaryFile(prefix="conductor-state-index-", delete=False) as handle:
            index_path = handle.name
        env = os.environ.copy()
        env["GIT_INDEX_FILE"] = index_path
        try:
            Path(index_path).unlink(missing_ok=True)
            if parent_tree:
                self._run_git(["read-tree", parent_tree], env=env)
            blob_hash = self._run_git(
                ["hash-object", "-w", "--stdin"], input_text=serialized
            ).stdout.strip()
            self._run_git(
                ["update-index", "--index-info"],
                input_text=f"100644 blob {blob_hash}\t{namespace}.json\n",
                env=env,
            )
            tree = self._run_git(["write-tree"], env=env).stdout.strip()
            commit_args = ["commit-tree", tree]
            if parent_commit:
                commit_args.extend(["-p", parent_commit])
            commit_hash = self._run_git(
                commit_args, input_text=f"conductor-state: update {namespace}\n"
            ).stdout.strip()
            self._run_git(["update-ref", ref, commit_hash])
        finally:
            Path(index_path).unlink(missing_ok=True)

    # local backend

    def _read_local(self, namespace: str) -> str | None:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        return local_file.read_text(encoding="utf-8")

    def _write_local(self, namespace: str, serialized: str) -> None:
        target = self._local_file(namespace)
        staging = target.with_suffix(".json.tmp")
        staging.write_text(serialized, encoding="utf-8")
        os.replace(staging, target)

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 5.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def _read_raw_json(self, namespace: str) -> Any:
        if self.git_enabled and self._backend_mode == "notes":
            content = self._read_notes(namespace)
        elif self.git_enabled and self._backend_mode == "branch":
            content = self._read_branch(namespace)
        else:
            content = self._read_local(namespace)
        if content is None or not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable state namespace %s", namespace)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self.git_enabled and self._backend_mode == "notes":
            self._write_notes(namespace, serialized)
        elif self.git_enabled and self._backend_mode == "branch":
            self._write_branch(namespace, serialized)
        else:
            self._write_local(namespace, serialized)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: StateStoreError | None = None
        for _ in range(self.UPDATE_ATTEMPTS):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateStoreError as exc:
                if "Concurrent state update detected" not in str(exc):
                    raise
                last_error = exc
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def get_context(self) -> dict[str, Any]:
        context = self.get_json("context", default={})
        return context if isinstance(context, dict) else {}

    def set_context(self, context: dict[str, Any]) -> None:
        self.set_json("context", context)

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def update_metrics(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        def _apply(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            updater(metrics)
            return metrics

        return self.update_json("metrics", _apply, default={})

    def increment_metric(self, key: str, value: int = 1) -> None:
        def _bump(metrics: dict[str, Any]) -> None:
            metrics[key] = int(metrics.get(key, 0)) + value

        self.update_metrics(_bump)

    def append_metric_event(self, key: str, event: dict[str, Any], *, keep: int = 200) -> None:
        def _append(metrics: dict[str, Any]) -> None:
            history = metrics.get(key, [])
            if not isinstance(history, list):
                history = []
            history.append(event)
            metrics[key] = history[-keep:]

        self.update_metrics(_append)

    def get_runs(self) -> dict[str, Any]:
        runs = self.get_json("runs", default={})
        return runs if isinstance(runs, dict) else {}

    def get_leases(self) -> dict[str, Any]:
        leases = self.get_json("leases", default={})
        return leases if isinstance(leases, dict) else {}
