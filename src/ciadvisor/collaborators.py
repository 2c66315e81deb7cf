# collaborators.py
"""
Interfaces the engine consumes from its host: a file store and a
secrets/policy provider. Local implementations are provided for the CLI.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from .config import Policy

DEFAULT_WORKFLOW_DIR = ".github/workflows"
PIPELINE_SUFFIXES = (".yml", ".yaml")


@runtime_checkable
class FileStore(Protocol):
    def read(self, path: str) -> str: ...

    def write(self, path: str, text: str) -> None: ...

    def exists(self, path: str) -> bool: ...


class LocalFileStore:
    """
    FileStore over the local filesystem.

    Relative paths resolve against `root`.
    """

    def __init__(self, root: str | Path = "."):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.root / p

    def read(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, text: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(target)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()


@runtime_checkable
class PolicyProvider(Protocol):
    def list_known_secrets(self) -> Optional[List[str]]: ...

    def get_policies(self) -> Policy: ...


class StaticPolicyProvider:
    """Serves a policy built in code."""

    def __init__(self, policy: Optional[Policy] = None):
        self.policy = policy or Policy()

    def list_known_secrets(self) -> Optional[List[str]]:
        return self.policy.known_secrets

    def get_policies(self) -> Policy:
        return self.policy


class YamlPolicyProvider:
    """
    Reads the policy from a YAML file on first use.

    Raises PolicyError when the file is unreadable or invalid.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._policy: Optional[Policy] = None

    def get_policies(self) -> Policy:
        if self._policy is None:
            self._policy = Policy.from_yaml(self.path)
        return self._policy

    def list_known_secrets(self) -> Optional[List[str]]:
        return self.get_policies().known_secrets


def discover_pipeline_files(root: str | Path = ".", patterns: Iterable[str] = ()) -> List[Path]:
    """
    Pipeline files to scan under `root`.

    Without patterns: every *.yml / *.yaml in `.github/workflows` if that
    directory exists, otherwise directly under `root`. Sorted.
    """
    base = Path(root)
    found: List[Path] = []
    patterns = list(patterns)
    if patterns:
        for pat in patterns:
            found.extend(p for p in base.glob(pat) if p.is_file())
    else:
        workflows = base / DEFAULT_WORKFLOW_DIR
        directory = workflows if workflows.is_dir() else base
        found.extend(p for p in directory.iterdir() if p.is_file() and p.suffix in PIPELINE_SUFFIXES)
    return sorted(set(found))
