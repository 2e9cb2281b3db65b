from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from conductor.errors import MergeConflict, VersionControlError
from conductor.models import WorkItem
from conductor.state.git_notes import STATE_DIRNAME

logger = logging.getLogger(__name__)

DIFF_LIMIT = 20_000


@dataclass(slots=True)
class ChangeSet:
    item_id: str
    working_directory: Path
    branch: str | None = None
    base_ref: str | None = None
    head_ref: str | None = None
    paths: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MergeOutcome:
    ok: bool
    diff: str = ""
    paths: list[str] = field(default_factory=list)

    @classmethod
    def clean(cls) -> MergeOutcome:
        return cls(ok=True)

    @classmethod
    def conflict(cls, diff: str, paths: list[str] | None = None) -> MergeOutcome:
        return cls(ok=False, diff=diff, paths=list(paths or []))


class VersionControl(ABC):
    """Per-item working trees, non-destructive trial merges and the final commit."""

    @abstractmethod
    def prepare(self, item: WorkItem, *, fresh: bool = False) -> Path:
        """Return the working directory the item's worker should run in."""

    @abstractmethod
    def change_set(self, item: WorkItem) -> ChangeSet: ...

    @abstractmethod
    def trial_merge(self, change_set: ChangeSet) -> MergeOutcome: ...

    @abstractmethod
    def commit(self, change_set: ChangeSet) -> str:
        """Land the change set on the baseline and return the resulting ref.

        Raises :class:`MergeConflict` when the baseline moved underneath it.
        """

    @abstractmethod
    def branch_commits(self, item: WorkItem) -> list[str]: ...

    def discard(self, item: WorkItem) -> None:
        """Drop any per-item working state."""


class LocalVersionControl(VersionControl):
    """Single shared working tree for projects outside git; merges always succeed."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self._landed: dict[str, int] = {}

    def prepare(self, item: WorkItem, *, fresh: bool = False) -> Path:
        return self.repo_root

    def change_set(self, item: WorkItem) -> ChangeSet:
        return ChangeSet(
            item_id=item.id,
            working_directory=self.repo_root,
            paths=sorted(item.predicted_resources),
        )

    def trial_merge(self, change_set: ChangeSet) -> MergeOutcome:
        return MergeOutcome.clean()

    def commit(self, change_set: ChangeSet) -> str:
        count = self._landed.get(change_set.item_id, 0) + 1
        self._landed[change_set.item_id] = count
        return f"local-{change_set.item_id}-{count}"

    def branch_commits(self, item: WorkItem) -> list[str]:
        return []


class GitVersionControl(VersionControl):
    """One worktree and branch per item under ``.conductor/worktrees``.

    Trial merges use ``git merge-tree --write-tree`` so the baseline checkout is
    never touched until :meth:`commit` lands the branch with a no-ff merge.
    """

    BRANCH_PREFIX = "conductor/work"

    def __init__(self, repo_root: Path, *, baseline: str | None = None) -> None:
        self.repo_root = repo_root.resolve()
        self.worktree_root = self.repo_root / STATE_DIRNAME / "worktrees"
        self._baseline = baseline

    def _git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd or self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise VersionControlError("git executable not found") from exc
        if check and proc.returncode != 0:
            raise VersionControlError(
                f"git {' '.join(args[:3])} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    @property
    def baseline(self) -> str:
        if self._baseline is None:
            self._baseline = self._git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()
        return self._baseline

    def branch_name(self, item_id: str) -> str:
        return f"{self.BRANCH_PREFIX}/{item_id}"

    def worktree_path(self, item_id: str) -> Path:
        return self.worktree_root / item_id

    def _branch_exists(self, branch: str) -> bool:
        proc = self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def _exclude_state_dir(self) -> None:
        git_dir = Path(self._git(["rev-parse", "--git-common-dir"]).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_root / git_dir
        exclude = git_dir / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        entry = f"/{STATE_DIRNAME}/"
        if entry not in existing.splitlines():
            with exclude.open("a", encoding="utf-8") as handle:
                if existing and not existing.endswith("\n"):
                    handle.write("\n")
                handle.write(f"{entry}\n")

    def prepare(self, item: WorkItem, *, fresh: bool = False) -> Path:
        self._exclude_state_dir()
        path = self.worktree_path(item.id)
        branch = self.branch_name(item.id)
        if fresh:
            self.discard(item)
        if path.exists() and (path / ".git").exists():
            return path
        self.worktree_root.mkdir(parents=True, exist_ok=True)
        self._git(["worktree", "prune"], check=False)
        if self._branch_exists(branch):
            self._git(["worktree", "add", str(path), branch])
        else:
            self._git(["worktree", "add", "-b", branch, str(path), self.baseline])
        return path

    def _commit_pending(self, item: WorkItem, path: Path) -> None:
        status = self._git(["status", "--porcelain"], cwd=path).stdout
        if not status.strip():
            return
        self._git(["add", "-A"], cwd=path)
        self._git(
            ["commit", "--no-verify", "-m", f"conductor: {item.id} uncommitted work"],
            cwd=path,
        )

    def change_set(self, item: WorkItem) -> ChangeSet:
        path = self.worktree_path(item.id)
        branch = self.branch_name(item.id)
        if not path.exists():
            raise VersionControlError(f"No working tree prepared for {item.id}")
        self._commit_pending(item, path)
        base_ref = self._git(["merge-base", self.baseline, branch]).stdout.strip()
        head_ref = self._git(["rev-parse", branch]).stdout.strip()
        names = self._git(["diff", "--name-only", f"{base_ref}..{head_ref}"]).stdout
        return ChangeSet(
            item_id=item.id,
            working_directory=path,
            branch=branch,
            base_ref=base_ref,
            head_ref=head_ref,
            paths=sorted({line.strip() for line in names.splitlines() if line.strip()}),
            commits=self.branch_commits(item),
        )

    def trial_merge(self, change_set: ChangeSet) -> MergeOutcome:
        if not change_set.branch:
            return MergeOutcome.clean()
        proc = self._git(
            ["merge-tree", "--write-tree", "--name-only", self.baseline, change_set.branch],
            check=False,
        )
        if proc.returncode == 0:
            return MergeOutcome.clean()
        if proc.returncode != 1:
            raise VersionControlError(f"git merge-tree failed: {proc.stderr.strip()}")
        body = proc.stdout.split("\n", 1)[1] if "\n" in proc.stdout else ""
        conflict_block, _, messages = body.partition("\n\n")
        paths = sorted({line.strip() for line in conflict_block.splitlines() if line.strip()})
        diff = self._git(
            ["diff", self.baseline, change_set.branch, "--", *paths], check=False
        ).stdout
        rendered = f"{messages.strip()}\n\n{diff}".strip()
        return MergeOutcome.conflict(rendered[:DIFF_LIMIT], paths)

    def commit(self, change_set: ChangeSet) -> str:
        if not change_set.branch:
            raise VersionControlError(f"Change set for {change_set.item_id} has no branch")
        current = self._git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()
        if current != self.baseline:
            raise VersionControlError(
                f"Baseline checkout is on {current}, expected {self.baseline}"
            )
        proc = self._git(
            [
                "merge",
                "--no-ff",
                "--no-edit",
                "-m",
                f"conductor: land {change_set.item_id}",
                change_set.branch,
            ],
            check=False,
        )
        if proc.returncode != 0:
            conflicted = self._git(["diff", "--name-only", "--diff-filter=U"], check=False).stdout
            diff = self._git(["diff"], check=False).stdout
            self._git(["merge", "--abort"], check=False)
            paths = [line.strip() for line in conflicted.splitlines() if line.strip()]
            raise MergeConflict(diff[:DIFF_LIMIT], paths=paths)
        ref = self._git(["rev-parse", "HEAD"]).stdout.strip()
        logger.info("Landed %s at %s", change_set.item_id, ref[:12])
        return ref

    def branch_commits(self, item: WorkItem) -> list[str]:
        branch = self.branch_name(item.id)
        if not self._branch_exists(branch):
            return []
        proc = self._git(["rev-list", "--reverse", f"{self.baseline}..{branch}"], check=False)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def discard(self, item: WorkItem) -> None:
        path = self.worktree_path(item.id)
        if path.exists():
            self._git(["worktree", "remove", "--force", str(path)], check=False)
        self._git(["worktree", "prune"], check=False)
        branch = self.branch_name(item.id)
        if self._branch_exists(branch):
            self._git(["branch", "-D", branch], check=False)


def is_git_repository(path: Path) -> bool:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=path,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def build_vcs(repo_root: Path) -> VersionControl:
    if is_git_repository(repo_root):
        return GitVersionControl(repo_root)
    logger.info("%s is not a git repository; using a shared working tree", repo_root)
    return LocalVersionControl(repo_root)
