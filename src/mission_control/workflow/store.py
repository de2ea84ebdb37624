"""File-based workflow store with cross-process locking.

Every collection (tasks, epics, agents, messages, notifications, activities,
thread subscriptions and the key/value settings) lives in one YAML document
(``workflow.yaml``) inside the project's ``.mission_control/`` directory.  All
reads and writes go through :meth:`WorkflowStore.transaction`, which holds an
exclusive file lock for the whole body and writes the document back only when
the body finishes without raising.  A failed mutation therefore leaves the
file exactly as it was.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from filelock import FileLock

from ..constants import LOCK_TIMEOUT, STORE_FILE, STORE_LOCK_FILE, STORE_SCHEMA_VERSION
from ..errors import StoreCorruptedError
from ..io_utils import _atomic_write_yaml, _load_data_with_error
from .actors import Actor
from .model import (
    Activity,
    Agent,
    Epic,
    Message,
    Notification,
    Task,
    ThreadSubscription,
)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class _Collection(Generic[T]):
    """Ordered, id-indexed list of records of one kind."""

    def __init__(self, name: str, records: list[T]) -> None:
        self.name = name
        self._records: dict[str, T] = {}
        for record in records:
            self._records[record.id] = record  # type: ignore[attr-defined]
        self.dirty = False

    def get(self, record_id: Optional[str]) -> Optional[T]:
        if not record_id:
            return None
        return self._records.get(record_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def all(self) -> list[T]:
        return list(self._records.values())

    def filter(self, predicate: Callable[[T], bool]) -> list[T]:
        return [r for r in self._records.values() if predicate(r)]

    def add(self, record: T) -> T:
        record_id = record.id  # type: ignore[attr-defined]
        if record_id in self._records:
            raise ValueError(f"{self.name}: {record_id} already exists")
        self._records[record_id] = record
        self.dirty = True
        return record

    def remove(self, record_id: str) -> bool:
        if self._records.pop(record_id, None) is None:
            return False
        self.dirty = True
        return True

    def remove_where(self, predicate: Callable[[T], bool]) -> int:
        doomed = [rid for rid, r in self._records.items() if predicate(r)]
        for rid in doomed:
            del self._records[rid]
        if doomed:
            self.dirty = True
        return len(doomed)

    def dump(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._records.values()]  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class WorkflowTx:
    """In-memory view over the whole document for one transaction.

    Records are mutated in place; the store compares the serialized document
    with the snapshot taken at load time to decide whether to write back.
    """

    def __init__(self, document: dict[str, Any]) -> None:
        self.tasks: _Collection[Task] = _Collection(
            "tasks", [Task.from_dict(d) for d in _records(document, "tasks")]
        )
        self.epics: _Collection[Epic] = _Collection(
            "epics", [Epic.from_dict(d) for d in _records(document, "epics")]
        )
        self.agents: _Collection[Agent] = _Collection(
            "agents", [Agent.from_dict(d) for d in _records(document, "agents")]
        )
        self.messages: _Collection[Message] = _Collection(
            "messages", [Message.from_dict(d) for d in _records(document, "messages")]
        )
        self.notifications: _Collection[Notification] = _Collection(
            "notifications", [Notification.from_dict(d) for d in _records(document, "notifications")]
        )
        self.activities: _Collection[Activity] = _Collection(
            "activities", [Activity.from_dict(d) for d in _records(document, "activities")]
        )
        self.subscriptions: _Collection[ThreadSubscription] = _Collection(
            "subscriptions",
            [ThreadSubscription.from_dict(d) for d in _records(document, "subscriptions")],
        )
        raw_settings = document.get("settings")
        self._settings: dict[str, Any] = dict(raw_settings) if isinstance(raw_settings, dict) else {}
        self._baseline = self.to_document()
        self._dirty = False

    # -- settings -----------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self._dirty = True

    def delete_setting(self, key: str) -> bool:
        if key not in self._settings:
            return False
        del self._settings[key]
        self._dirty = True
        return True

    def settings_with_prefix(self, prefix: str) -> dict[str, Any]:
        return {k: v for k, v in self._settings.items() if k.startswith(prefix)}

    # -- lookups ------------------------------------------------------------

    def agent_names(self) -> dict[str, str]:
        return {a.id: a.name for a in self.agents.all()}

    def find_subscription(self, actor: Actor, task_id: str) -> Optional[ThreadSubscription]:
        for sub in self.subscriptions.all():
            if sub.task_id == task_id and sub.actor.key == actor.key:
                return sub
        return None

    def subscriptions_for_task(self, task_id: str) -> list[ThreadSubscription]:
        return self.subscriptions.filter(lambda s: s.task_id == task_id)

    # -- persistence --------------------------------------------------------

    @property
    def dirty(self) -> bool:
        if self._dirty:
            return True
        return self.to_document() != self._baseline

    def to_document(self) -> dict[str, Any]:
        return {
            "version": STORE_SCHEMA_VERSION,
            "tasks": self.tasks.dump(),
            "epics": self.epics.dump(),
            "agents": self.agents.dump(),
            "messages": self.messages.dump(),
            "notifications": self.notifications.dump(),
            "activities": self.activities.dump(),
            "subscriptions": self.subscriptions.dump(),
            "settings": dict(self._settings),
        }


def _records(document: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = document.get(key)
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# WorkflowStore
# ---------------------------------------------------------------------------

class WorkflowStore:
    """Thread-safe, file-backed store for every workflow collection.

    Parameters
    ----------
    state_dir:
        Path to the ``.mission_control/`` directory for the project.
    """

    def __init__(self, state_dir: Path, *, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self.state_dir = state_dir
        self.path = state_dir / STORE_FILE
        self._file_lock = FileLock(str(state_dir / STORE_LOCK_FILE), timeout=lock_timeout)
        self._rlock = threading.RLock()
        self._active: Optional[WorkflowTx] = None

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> WorkflowTx:
        data, err = _load_data_with_error(self.path, {})
        if err:
            raise StoreCorruptedError(f"Cannot read workflow store: {err}", path=str(self.path))
        return WorkflowTx(data)

    def _save(self, tx: WorkflowTx) -> None:
        _atomic_write_yaml(self.path, tx.to_document())

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[WorkflowTx]:
        """Acquire the locks, load the document, yield a transaction, and save on exit.

        Calling ``transaction()`` again on the same thread while one is open
        yields the open transaction; only the outermost block writes.

        Usage::

            with store.transaction() as tx:
                task = tx.tasks.get("task-abc12345")
                task.priority = TaskPriority.P0
                # saved on clean exit
        """
        with self._rlock:
            if self._active is not None:
                yield self._active
                return
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with self._file_lock:
                tx = self._load()
                self._active = tx
                try:
                    yield tx
                finally:
                    self._active = None
                if tx.dirty:
                    self._save(tx)

    def read_snapshot(self) -> WorkflowTx:
        """Return a detached copy of the current document (no lock held after return)."""
        with self._rlock:
            if self._active is not None:
                return self._active
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with self._file_lock:
                return self._load()
