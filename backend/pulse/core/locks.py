import threading


class ProjectLocks:
    """One mutex per project; unrelated projects never contend.

    The registry lock is held only while creating an entry.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get(self, project_id: str) -> threading.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(project_id, threading.Lock())
        return lock

    def projects(self) -> list[str]:
        with self._registry_lock:
            return list(self._locks)
