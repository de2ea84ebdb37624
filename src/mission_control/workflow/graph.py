"""Dependency graph queries over the blocking relation.

``blocked_by`` edges point from a task to the tasks that must finish first;
``blocks`` is the inverse.  All traversals are iterative over an id-indexed
adjacency map, so deep chains never hit the recursion limit.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from .model import Task


class DependencyGraph:
    """Read-only index of the blocking relation, built once per transaction."""

    def __init__(self, tasks: Iterable[Task]) -> None:
        self.tasks: dict[str, Task] = {t.id: t for t in tasks}
        self.blocked_by: dict[str, list[str]] = {tid: list(t.blocked_by) for tid, t in self.tasks.items()}
        self.blocks: dict[str, list[str]] = {tid: list(t.blocks) for tid, t in self.tasks.items()}

    # -- cycle detection ----------------------------------------------------

    def would_create_cycle(self, task_id: str, blocker_id: str) -> bool:
        """True iff ``task_id`` is already reachable from ``blocker_id`` via ``blocked_by``.

        In that case adding ``blocker_id`` as a blocker of ``task_id`` closes a
        cycle.
        """
        if task_id == blocker_id:
            return True
        visited: set[str] = set()
        stack = [blocker_id]
        while stack:
            current = stack.pop()
            if current == task_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            for dep_id in self.blocked_by.get(current, ()):
                if dep_id not in visited:
                    stack.append(dep_id)
        return False

    # -- reachability -------------------------------------------------------

    def _reach(self, origin: str, edges: dict[str, list[str]]) -> list[str]:
        seen: set[str] = {origin}
        order: list[str] = []
        stack = list(reversed(edges.get(origin, ())))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            stack.extend(reversed([n for n in edges.get(current, ()) if n not in seen]))
        return order

    def transitive_dependencies(self, task_id: str) -> list[str]:
        """Every task that must finish before *task_id*, origin excluded."""
        return self._reach(task_id, self.blocked_by)

    def transitive_dependents(self, task_id: str) -> list[str]:
        """Every task waiting, directly or not, on *task_id*."""
        return self._reach(task_id, self.blocks)

    # -- critical path ------------------------------------------------------

    def critical_path(self, task_id: str) -> list[str]:
        """Longest chain of blockers starting at *task_id*, deepest blocker last.

        A task with no blockers is its own path.  Ties go to the first blocker
        in ``blocked_by`` order.
        """
        memo: dict[str, list[str]] = {}
        # Iterative post-order: a node is resolved once all its blockers are.
        stack: list[tuple[str, bool]] = [(task_id, False)]
        in_progress: set[str] = set()
        while stack:
            node, expanded = stack.pop()
            if node in memo:
                continue
            deps = self.blocked_by.get(node, [])
            if not expanded:
                in_progress.add(node)
                stack.append((node, True))
                for dep in reversed(deps):
                    if dep not in memo and dep not in in_progress:
                        stack.append((dep, False))
                continue
            in_progress.discard(node)
            best: list[str] = []
            for dep in deps:
                candidate = memo.get(dep, [dep])
                if len(candidate) > len(best):
                    best = candidate
            memo[node] = [node] + best
        return memo.get(task_id, [task_id])

    # -- ordering -----------------------------------------------------------

    def execution_order(self) -> list[list[str]]:
        """Topological batches of unfinished tasks (Kahn's algorithm).

        Each batch holds tasks whose unfinished blockers all sit in earlier
        batches; batches are sorted by priority.
        """
        pending = {tid: t for tid, t in self.tasks.items() if not t.is_terminal}
        in_degree: dict[str, int] = {tid: 0 for tid in pending}
        adj: dict[str, list[str]] = defaultdict(list)
        for t in pending.values():
            for dep_id in t.blocked_by:
                if dep_id in pending:
                    adj[dep_id].append(t.id)
                    in_degree[t.id] += 1

        def _by_priority(ids: list[str]) -> list[str]:
            return sorted(ids, key=lambda tid: (pending[tid].priority.sort_key, pending[tid].created_at))

        batches: list[list[str]] = []
        queue = _by_priority([tid for tid, deg in in_degree.items() if deg == 0])
        while queue:
            batches.append(queue)
            next_queue: list[str] = []
            for tid in queue:
                for neighbor in adj.get(tid, []):
                    in_degree[neighbor] -= 1
                    if in_degree[neighbor] == 0:
                        next_queue.append(neighbor)
            queue = _by_priority(next_queue)
        return batches

    def subgraph(self, task_id: Optional[str] = None) -> dict[str, list[str]]:
        """Return ``{task_id: [blocked_by_ids]}``.

        With *task_id*, only the connected component containing it (both edge
        directions) is returned.
        """
        if task_id is None:
            return {tid: list(deps) for tid, deps in self.blocked_by.items()}
        visited: set[str] = set()
        stack = [task_id]
        sub: dict[str, list[str]] = {}
        while stack:
            nid = stack.pop()
            if nid in visited:
                continue
            visited.add(nid)
            deps = self.blocked_by.get(nid, [])
            sub[nid] = list(deps)
            stack.extend(d for d in deps if d not in visited)
            stack.extend(d for d in self.blocks.get(nid, []) if d not in visited)
        return sub
