"""
MachineDirectory -- Immutable lookup of machine placement and processor links.

Responsibility:
    Answers "where is this machine" and "which processor settled this
    machine's sales at time t" for every engine, from a snapshot of
    machines and time-windowed processor assignments.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - A machine with processor assignments is linked by the assignment
      active at the sale time; ``Machine.processor_id`` is only the fallback
      for machines that have no assignment history at all.
    - Overlapping assignments resolve deterministically to the one with the
      latest ``effective_start`` (then the lowest processor id).
    - Duplicate machine ids with conflicting content are rejected.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from vending_kernel.domain.records import Machine, ProcessorAssignment
from vending_kernel.exceptions import InvalidRecordError
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.directory")


class MachineDirectory:
    """
    Read-only index over machines and their processor assignments.

    Contract:
        Built once per snapshot; never mutated afterwards, so it can be
        shared by concurrent runs over the same snapshot.
    """

    def __init__(
        self,
        machines: Iterable[Machine],
        assignments: Iterable[ProcessorAssignment] = (),
    ) -> None:
        by_id: dict[str, Machine] = {}
        for machine in machines:
            existing = by_id.get(machine.id)
            if existing is not None and existing != machine:
                raise InvalidRecordError("Machine", machine.id, "duplicate id with conflicting fields")
            by_id[machine.id] = machine
        self._machines = by_id

        grouped: dict[str, list[ProcessorAssignment]] = defaultdict(list)
        for assignment in assignments:
            grouped[assignment.machine_id].append(assignment)
        self._assignments = {
            machine_id: tuple(
                sorted(rows, key=lambda a: (-a.effective_start.timestamp(), a.processor_id))
            )
            for machine_id, rows in grouped.items()
        }

        by_location: dict[str, list[str]] = defaultdict(list)
        for machine in by_id.values():
            if machine.location_id is not None:
                by_location[machine.location_id].append(machine.id)
        self._by_location = {loc: tuple(sorted(ids)) for loc, ids in by_location.items()}

        logger.debug("machine_directory_built", extra={
            "machine_count": len(self._machines),
            "assigned_machine_count": len(self._assignments),
            "location_count": len(self._by_location),
        })

    def knows(self, machine_id: str) -> bool:
        return machine_id in self._machines

    def machine(self, machine_id: str) -> Machine | None:
        return self._machines.get(machine_id)

    def location_of(self, machine_id: str) -> str | None:
        machine = self._machines.get(machine_id)
        return machine.location_id if machine is not None else None

    def machines_at(self, location_id: str) -> tuple[str, ...]:
        return self._by_location.get(location_id, ())

    @property
    def machine_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._machines))

    @property
    def location_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_location))

    def processor_at(self, machine_id: str, at: datetime) -> str | None:
        """
        Processor linked to ``machine_id`` at ``at``, or None when unmapped.

        Postconditions:
            - Returns None for machines unknown to the directory.
        """
        history = self._assignments.get(machine_id)
        if history is not None:
            # Sorted newest first, so the first active row wins.
            for assignment in history:
                if assignment.is_active_at(at):
                    return assignment.processor_id
            return None
        machine = self._machines.get(machine_id)
        return machine.processor_id if machine is not None else None
