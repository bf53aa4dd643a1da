"""Small synchronous workflow engine.

A node runs ``prepare -> execute -> finalize``; ``execute`` is retried up to
``max_retries`` attempts. A ``Flow`` walks action-labelled edges between
nodes until the returned action has no edge. Batch variants map ``execute``
over a list (optionally one worker thread per item), and parallel batch flows
run the start node once per parameter set on an isolated copy of the shared
state, then reduce the per-branch states back into the caller's mapping.

There is no cancellation: a hung ``execute`` blocks its thread, and the join
barrier after a fan-out waits for every branch.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from .errors import FlowError


logger = logging.getLogger("deepresearch.workflow")

DEFAULT_ACTION = "default"
PROCESSED_ACTION = "processed"
DEFAULT_SKIP_KEYS = ("batches",)
INPUT_KEY_SUFFIX = "_input"


def action_key(action: Any) -> str:
    """Normalize a returned action (None, str, or str-valued Enum) to an edge key."""
    if action is None:
        return DEFAULT_ACTION
    value = getattr(action, "value", action)
    text = str(value)
    return text or DEFAULT_ACTION


class _Transition:
    def __init__(self, source: "BaseNode", action: Any):
        self.source = source
        self.action = action

    def __rshift__(self, target: "BaseNode") -> "BaseNode":
        return self.source.next(target, self.action)


class BaseNode:
    def __init__(self) -> None:
        self.params: Mapping[str, Any] = MappingProxyType({})
        self.successors: Dict[str, "BaseNode"] = {}

    def set_params(self, params: Optional[Mapping[str, Any]]) -> "BaseNode":
        self.params = MappingProxyType(dict(params or {}))
        return self

    def instantiate(self, params: Optional[Mapping[str, Any]] = None) -> "BaseNode":
        """Fresh per-run instance with its own read-only params.

        Successor edges are shared with the prototype; they are fixed at graph
        construction time.
        """
        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.set_params(params if params is not None else self.params)
        return clone

    def on(self, action: Any, node: "BaseNode") -> "BaseNode":
        key = action_key(action)
        if key in self.successors:
            logger.warning("Overwriting successor for action '%s'", key)
        self.successors[key] = node
        return self

    def next(self, node: "BaseNode", action: Any = DEFAULT_ACTION) -> "BaseNode":
        self.on(action, node)
        return node

    def __rshift__(self, other: "BaseNode") -> "BaseNode":
        return self.next(other)

    def __sub__(self, action: Any) -> _Transition:
        return _Transition(self, action)

    def get_next_node(self, action: Any = None) -> Optional["BaseNode"]:
        return self.successors.get(action_key(action))

    def prepare(self, shared: Any) -> Any:
        return None

    def execute(self, prep_res: Any) -> Any:
        return None

    def finalize(self, shared: Any, prep_res: Any, exec_res: Any) -> Any:
        return None

    def _execute(self, prep_res: Any) -> Any:
        return self.execute(prep_res)

    def _run(self, shared: Any) -> Any:
        prep_res = self.prepare(shared)
        exec_res = self._execute(prep_res)
        return self.finalize(shared, prep_res, exec_res)

    def run(self, shared: Any) -> Any:
        if self.successors:
            logger.warning("Node won't run successors. Use Flow.")
        return self._run(shared)


class Node(BaseNode):
    """Node with bounded retry around ``execute``.

    ``execute`` must not touch the shared state; batch variants call it from
    worker threads.
    """

    def __init__(self, max_retries: int = 1, wait: float = 0.0):
        super().__init__()
        self.max_retries = max(int(max_retries), 1)
        self.wait = max(float(wait), 0.0)
        self.current_retry = 0

    def exec_fallback(self, prep_res: Any, exc: Exception) -> Any:
        raise exc

    def _execute_with_retry(self, item: Any) -> Any:
        for attempt in range(self.max_retries):
            self.current_retry = attempt
            try:
                return self.execute(item)
            except Exception as exc:
                if attempt == self.max_retries - 1:
                    return self.exec_fallback(item, exc)
                logger.warning(
                    "%s attempt %s/%s failed: %s",
                    type(self).__name__,
                    attempt + 1,
                    self.max_retries,
                    exc,
                )
                if self.wait > 0:
                    time.sleep(self.wait)
        return None

    def _execute(self, prep_res: Any) -> Any:
        return self._execute_with_retry(prep_res)


class BatchNode(Node):
    """Applies ``execute`` to each element of the prepared list, in order."""

    def _execute(self, items: Any) -> List[Any]:
        if not isinstance(items, list):
            return []
        return [self._execute_with_retry(item) for item in items]


class ParallelBatchNode(Node):
    """Like BatchNode, but one worker thread per item.

    Each worker runs on its own instance of the node so retry counters never
    race. Results come back in input order regardless of completion order.
    """

    def __init__(self, max_retries: int = 1, wait: float = 0.0, max_workers: Optional[int] = None):
        super().__init__(max_retries=max_retries, wait=wait)
        self.max_workers = max_workers

    def _execute(self, items: Any) -> List[Any]:
        if not isinstance(items, list) or not items:
            return []
        workers = self.max_workers or len(items)

        def _work(item: Any) -> Any:
            return self.instantiate()._execute_with_retry(item)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=type(self).__name__) as pool:
            return list(pool.map(_work, items))


class Flow(BaseNode):
    def __init__(self, start: Optional[BaseNode] = None):
        super().__init__()
        self.start_node = start

    def start(self, node: BaseNode) -> BaseNode:
        self.start_node = node
        return node

    def _walk(self, shared: Any, current: Optional[BaseNode], params: Mapping[str, Any]) -> Any:
        action = None
        while current is not None:
            node = current.instantiate(params)
            action = node._run(shared)
            following = current.get_next_node(action)
            if following is None and current.successors:
                logger.debug(
                    "Flow ends after %s: no successor for action '%s'",
                    type(current).__name__,
                    action_key(action),
                )
            current = following
        return action

    def _orchestrate(self, shared: Any, params: Optional[Mapping[str, Any]] = None) -> Any:
        if self.start_node is None:
            raise FlowError("Flow has no start node.")
        effective = params if params is not None else self.params
        return self._walk(shared, self.start_node, effective)

    def _run(self, shared: Any) -> Any:
        prep_res = self.prepare(shared)
        last_action = self._orchestrate(shared)
        return self.finalize(shared, prep_res, last_action)

    def execute(self, prep_res: Any) -> Any:
        raise FlowError("Flow can't execute directly.")


class BatchFlow(Flow):
    """Runs the whole flow once per parameter set returned by ``prepare``."""

    def prepare(self, shared: Any) -> Iterable[Mapping[str, Any]]:
        return []

    def _run(self, shared: Any) -> Any:
        batch_params = list(self.prepare(shared) or [])
        for batch in batch_params:
            self._orchestrate(shared, {**self.params, **dict(batch)})
        return self.finalize(shared, batch_params, None)


def snapshot_shared(shared: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy the shared mapping plus one level of nested dicts/lists.

    Deeper structures stay shared by reference and must not be mutated in
    divergent ways across branches.
    """
    copied: Dict[str, Any] = {}
    for key, value in shared.items():
        if isinstance(value, dict):
            copied[key] = dict(value)
        elif isinstance(value, list):
            copied[key] = list(value)
        else:
            copied[key] = value
    return copied


def _appended_items(baseline: Any, branch_value: List[Any]) -> List[Any]:
    if isinstance(baseline, list) and branch_value[: len(baseline)] == baseline:
        return branch_value[len(baseline):]
    return branch_value


class ParallelBatchFlow(BatchFlow):
    """Runs the start node once per parameter set, each in its own thread.

    Every branch gets a private snapshot of the shared mapping. After the join
    barrier the branch states are reduced into the caller's mapping key by key:

    - keys in ``skip_keys`` are skipped; with the default skip set, keys ending
      in ``_input`` are skipped as well;
    - dict + dict: merged, later branches overwrite same-named sub-keys;
    - list + list: the items each branch appended are concatenated onto the
      shared list, or the last branch's list wins when ``skip_keys`` is empty;
    - anything else: overwritten.

    Nodes chained after the start node (on ``processed``, else ``default``) then
    run once against the merged mapping.
    """

    def __init__(
        self,
        start: Optional[BaseNode] = None,
        skip_keys: Optional[Sequence[str]] = None,
        max_workers: Optional[int] = None,
    ):
        super().__init__(start)
        keys = DEFAULT_SKIP_KEYS if skip_keys is None else skip_keys
        self.skip_keys = frozenset(str(key) for key in keys)
        self.max_workers = max_workers

    @property
    def uses_default_skip_keys(self) -> bool:
        return self.skip_keys == frozenset(DEFAULT_SKIP_KEYS)

    def should_skip(self, key: Any) -> bool:
        name = str(key)
        if name in self.skip_keys:
            return True
        return self.uses_default_skip_keys and name.endswith(INPUT_KEY_SUFFIX)

    def _run_branch(self, state: Dict[str, Any], params: Mapping[str, Any]) -> Dict[str, Any]:
        node = self.start_node.instantiate(params)
        node._run(state)
        return state

    def _run(self, shared: MutableMapping[str, Any]) -> Any:
        if self.start_node is None:
            raise FlowError("Flow has no start node.")
        batch_params = list(self.prepare(shared) or [])
        if not batch_params:
            return self.finalize(shared, batch_params, None)

        baseline = snapshot_shared(shared)
        branches = [
            (snapshot_shared(shared), {**self.params, **dict(batch)}) for batch in batch_params
        ]
        workers = self.max_workers or len(branches)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=type(self).__name__) as pool:
            futures = [pool.submit(self._run_branch, state, params) for state, params in branches]
            states = [future.result() for future in futures]

        self.merge_states(shared, baseline, states)

        following = self.start_node.get_next_node(PROCESSED_ACTION) or self.start_node.get_next_node(
            DEFAULT_ACTION
        )
        if following is not None:
            self._walk(shared, following, self.params)
        return self.finalize(shared, batch_params, None)

    def merge_states(
        self,
        shared: MutableMapping[str, Any],
        baseline: Mapping[str, Any],
        states: Sequence[Mapping[str, Any]],
    ) -> None:
        for state in states:
            for key, value in state.items():
                if self.should_skip(key):
                    continue
                current = shared.get(key)
                if isinstance(current, dict) and isinstance(value, dict):
                    current.update(value)
                elif isinstance(current, list) and isinstance(value, list):
                    if not self.skip_keys:
                        shared[key] = value
                    else:
                        current.extend(_appended_items(baseline.get(key), value))
                else:
                    shared[key] = value
