# reconcile.py
"""Diff and apply desired output resources against what the cluster holds.

Every output kind goes through the same loop: observed objects are matched
to desired ones by a per-kind key, matches with a different spec are
updated, unmatched observed objects are deleted and leftover desired ones
are created. Objects without this controller's ownership labels are never
touched.
"""
from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Mapping, Optional

from errors import ApplyError, NotFoundError, SyncCancelled
from store import obj_key

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


class ReconcilePlan(dict):
    """A small, json-serializable planning object."""

    # kept as dict subclass for easy printing/JSON dumping


def normalize(obj: dict) -> dict:
    """Copy of an observed object fit to send back as an update.

    resourceVersion is kept so replaces stay conditional on what was listed.
    """
    obj = copy.deepcopy(obj)
    obj.pop("status", None)
    meta = obj.setdefault("metadata", {})
    for k in ["creationTimestamp", "generation", "managedFields"]:
        meta.pop(k, None)
    return obj


def display_name(obj: dict) -> str:
    meta = obj.get("metadata", {}) or {}
    name = meta.get("name") or f"{meta.get('generateName', '')}*"
    return f"{meta.get('namespace', '')}/{name}"


def owned_by_controller(obj: dict, ownership_labels: Mapping[str, str]) -> bool:
    labels = (obj.get("metadata", {}) or {}).get("labels", {}) or {}
    return all(labels.get(k) == v for k, v in ownership_labels.items())


def spec_differs(desired: dict, current: dict) -> bool:
    return desired.get("spec") != current.get("spec")


def replace_spec(desired: dict, current: dict) -> dict:
    updated = normalize(current)
    updated["spec"] = copy.deepcopy(desired.get("spec"))
    return updated


def _as_is(desired: dict) -> dict:
    return desired


@dataclass(frozen=True)
class KindRules:
    """How one output kind is matched, compared, merged and created."""
    kind: str
    key: Callable[[dict], Optional[Hashable]] = obj_key
    differs: Callable[[dict, dict], bool] = spec_differs
    merge: Callable[[dict, dict], dict] = replace_spec
    prepare_create: Callable[[dict], dict] = _as_is
    delete: bool = True


@dataclass
class Op:
    action: str
    kind: str
    obj: dict

    @property
    def name(self) -> str:
        return display_name(self.obj)


def diff_owned(rules: KindRules, desired: Mapping[Hashable, dict], current: List[dict],
               ownership_labels: Mapping[str, str]) -> List[Op]:
    remaining: Dict[Hashable, dict] = dict(desired)
    ops: List[Op] = []

    for curr in current:
        key = rules.key(curr)
        if not owned_by_controller(curr, ownership_labels):
            if key is not None and remaining.pop(key, None) is not None:
                logger.warning(
                    f"[reconcile] {rules.kind} {display_name(curr)} exists but is not managed by this controller, leaving it alone"
                )
            continue
        if key is None:
            logger.error(f"[reconcile] cannot match owned {rules.kind} {display_name(curr)}, skipping it")
            continue

        want = remaining.pop(key, None)
        if want is not None:
            if rules.differs(want, curr):
                ops.append(Op(UPDATE, rules.kind, rules.merge(want, curr)))
        elif rules.delete:
            ops.append(Op(DELETE, rules.kind, curr))

    for key in sorted(remaining, key=str):
        ops.append(Op(CREATE, rules.kind, rules.prepare_create(copy.deepcopy(remaining[key]))))
    return ops


def _plan_from_ops(kind: str, ops: List[Op]) -> ReconcilePlan:
    names: Dict[str, List[str]] = {CREATE: [], UPDATE: [], DELETE: []}
    for op in ops:
        names[op.action].append(op.name)
    for v in names.values():
        v.sort()
    return ReconcilePlan(
        kind=kind,
        counts={k: len(v) for k, v in names.items()},
        create=names[CREATE],
        update=names[UPDATE],
        delete=names[DELETE],
    )


def plan_owned(rules: KindRules, desired: Mapping[Hashable, dict], current: List[dict],
               ownership_labels: Mapping[str, str]) -> ReconcilePlan:
    """Compute what apply_owned() *would* do, without creating/updating/deleting anything."""
    return _plan_from_ops(rules.kind, diff_owned(rules, desired, current, ownership_labels))


def print_plan(plan: ReconcilePlan) -> None:
    kind = plan.get("kind")
    counts = plan.get("counts", {})
    print(f"[plan] kind={kind} create={counts.get('create',0)} update={counts.get('update',0)} delete={counts.get('delete',0)}")
    for k in (CREATE, UPDATE, DELETE):
        items = plan.get(k, []) or []
        if not items:
            continue
        print(f"[plan] {k}:")
        for name in items:
            print(f"  - {name}")


def _run(client, op: Op, cancel: Optional[threading.Event] = None) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelled(f"cancelled before {op.action} of {op.kind} {op.name}")
    if op.action == CREATE:
        client.create(op.kind, op.obj)
    elif op.action == UPDATE:
        client.update(op.kind, op.obj)
    else:
        try:
            client.delete(op.kind, op.obj)
        except NotFoundError:
            logger.debug(f"[reconcile] {op.kind} {op.name} already gone")
    logger.info(f"[reconcile] {op.action}d {op.kind} {op.name}")


def execute(client, ops: List[Op], max_workers: int = 8, cancel: Optional[threading.Event] = None) -> None:
    """Run ops on a bounded pool; the first failure or a set ``cancel`` stops everything not yet started."""
    if not ops:
        return
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {pool.submit(_run, client, op, cancel): op for op in ops}
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        for f in not_done:
            f.cancel()
        cancelled = None
        for f in done:
            err = f.exception()
            if isinstance(err, SyncCancelled):
                cancelled = err
            elif err is not None:
                op = futures[f]
                logger.error(f"[reconcile] error during {op.action} of {op.kind} {op.name}: {err}")
                raise ApplyError(op.action, op.kind, op.name, err) from err
        if cancelled is not None:
            logger.info(f"[reconcile] {cancelled}")
            raise cancelled


def apply_owned(client, rules: KindRules, desired: Mapping[Hashable, dict], current: List[dict],
                ownership_labels: Mapping[str, str], max_workers: int = 8,
                cancel: Optional[threading.Event] = None) -> ReconcilePlan:
    ops = diff_owned(rules, desired, current, ownership_labels)
    execute(client, ops, max_workers, cancel)
    return _plan_from_ops(rules.kind, ops)
