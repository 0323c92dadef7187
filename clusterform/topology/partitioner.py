"""
Slot partitioning over a fixed keyspace.

A fresh partition hands every master one contiguous range; the first
``total_slots % n`` masters (by id) get one extra slot. Given a previous
assignment, the partitioner instead moves the fewest slots that reach a
balanced layout:

* the masters that currently own the most slots receive the extra slots, so
  the remainder does not force a needless move;
* each surviving master keeps ``min(owned, quota)`` of its own slots, lowest
  first;
* slots released by over-quota masters or orphaned by departed ones are handed
  out, lowest first, to masters under quota, in id order.

Every moved slot fills a deficit, so the number of moves is the minimum any
balanced layout allows. In particular adding a master moves only its share
and removing one moves only its own slots; two masters that both remain never
trade slots.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TypeAlias

from loguru import logger

from clusterform.core.errors import (
    InsufficientSlotGranularityError,
    MalformedTopologyError,
    NoMastersAvailableError,
)
from clusterform.datastructures.type_aliases import NodeId, SlotCount, SlotNumber

from .types import Node, SlotRange, ranges_from_slots

SlotAssignment: TypeAlias = dict[NodeId, tuple[SlotRange, ...]]


def _master_ids(masters: Iterable[Node | NodeId]) -> list[NodeId]:
    ids = [master if isinstance(master, str) else master.node_id for master in masters]
    if len(set(ids)) != len(ids):
        raise ValueError("duplicate master ids")
    return sorted(ids)


def quotas(
    master_ids: Sequence[NodeId],
    total_slots: SlotCount,
    owned: Mapping[NodeId, SlotCount] | None = None,
) -> dict[NodeId, SlotCount]:
    """Target slot count per master.

    ``master_ids`` must be sorted. Without ``owned`` the remainder goes to the
    first masters in order; with it, to the masters that own the most slots.
    """
    count = len(master_ids)
    base, remainder = divmod(total_slots, count)
    if owned:
        ranked = sorted(master_ids, key=lambda node_id: (-owned.get(node_id, 0), node_id))
    else:
        ranked = list(master_ids)
    extras = set(ranked[:remainder])
    return {node_id: base + (1 if node_id in extras else 0) for node_id in master_ids}


def _check_inputs(master_ids: Sequence[NodeId], total_slots: SlotCount) -> None:
    if not master_ids:
        raise NoMastersAvailableError("cannot partition slots across zero masters")
    if len(master_ids) > total_slots:
        raise InsufficientSlotGranularityError(
            f"{len(master_ids)} masters cannot each own a slot out of {total_slots}"
        )


def fresh_partition(
    masters: Iterable[Node | NodeId], total_slots: SlotCount
) -> SlotAssignment:
    """One contiguous range per master, in id order."""
    master_ids = _master_ids(masters)
    _check_inputs(master_ids, total_slots)
    targets = quotas(master_ids, total_slots)
    assignment: SlotAssignment = {}
    start = 0
    for node_id in master_ids:
        end = start + targets[node_id] - 1
        assignment[node_id] = (SlotRange(start, end),)
        start = end + 1
    return assignment


def partition(
    masters: Iterable[Node | NodeId],
    total_slots: SlotCount,
    previous: Mapping[NodeId, Sequence[SlotRange]] | None = None,
) -> SlotAssignment:
    """Assign every slot in ``[0, total_slots)`` to exactly one master.

    ``previous`` is the slot map of the last converged topology. Ranges it
    lists for nodes that are no longer masters, or beyond ``total_slots``, are
    treated as orphaned.

    Raises:
        NoMastersAvailableError: when ``masters`` is empty.
        InsufficientSlotGranularityError: when there are more masters than slots.
    """
    master_ids = _master_ids(masters)
    _check_inputs(master_ids, total_slots)

    if not previous or not any(node_id in previous for node_id in master_ids):
        return fresh_partition(master_ids, total_slots)

    held: dict[NodeId, list[SlotNumber]] = {node_id: [] for node_id in master_ids}
    claimed: set[SlotNumber] = set()
    for node_id in master_ids:
        for slot_range in sorted(previous.get(node_id, ())):
            for slot in slot_range.slots():
                if slot < total_slots and slot not in claimed:
                    held[node_id].append(slot)
                    claimed.add(slot)

    targets = quotas(
        master_ids, total_slots, {node_id: len(held[node_id]) for node_id in master_ids}
    )

    pool: list[SlotNumber] = [slot for slot in range(total_slots) if slot not in claimed]
    kept: dict[NodeId, list[SlotNumber]] = {}
    for node_id in master_ids:
        slots = held[node_id]
        quota = targets[node_id]
        kept[node_id] = slots[:quota]
        pool.extend(slots[quota:])
    pool.sort()

    cursor = 0
    for node_id in master_ids:
        deficit = targets[node_id] - len(kept[node_id])
        if deficit > 0:
            kept[node_id].extend(pool[cursor : cursor + deficit])
            cursor += deficit

    if cursor != len(pool) or any(len(kept[n]) != targets[n] for n in master_ids):
        raise MalformedTopologyError(
            f"quotas do not cover the keyspace: {len(pool) - cursor} of "
            f"{total_slots} slots left unassigned"
        )

    logger.debug(
        "Rebalanced {} slots across {} masters, {} slots reassigned",
        total_slots,
        len(master_ids),
        cursor,
    )
    return {node_id: ranges_from_slots(kept[node_id]) for node_id in master_ids}


def moved_slots(
    before: Mapping[NodeId, Sequence[SlotRange]],
    after: Mapping[NodeId, Sequence[SlotRange]],
) -> SlotCount:
    """Number of slots whose owner differs between two assignments."""
    owners_before: dict[SlotNumber, NodeId] = {}
    for node_id, ranges in before.items():
        for slot_range in ranges:
            for slot in slot_range.slots():
                owners_before[slot] = node_id
    moved = 0
    for node_id, ranges in after.items():
        for slot_range in ranges:
            for slot in slot_range.slots():
                if owners_before.get(slot) != node_id:
                    moved += 1
    return moved
