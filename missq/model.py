"""Cycle-level reference model of the miss queue.

Operations issued between two calls to `MissTable.tick` belong to one
step. They all observe the table as it was at the start of the step, and
their effects are committed together by `tick`. Faults are raised from the
call that detects them and the offending operation is not staged. A
fault found by `tick` itself drops only the faulting join and is raised
after the rest of the step has been committed.
"""

from dataclasses import dataclass, replace
import logging
from typing import Dict, List, Optional, Tuple

from missq.consts import MissState
from missq.exc import PromotionFault, ContractViolation
from missq.types import HasMissQueueParams
from missq.utils import onehot_index, mask_to_set

logger = logging.getLogger(__name__)

_GRANT_NEXT = {
    MissState.READ_PENDING: MissState.READ_SENT,
    MissState.WRITE_PENDING: MissState.WRITE_SENT,
}


@dataclass
class MissEntry:
    """One per-thread slot."""

    valid: bool = False
    waiting: int = 0
    addr: int = 0
    state: MissState = MissState.INVALID

    @property
    def pending(self) -> bool:
        return self.valid and self.state in _GRANT_NEXT

    @property
    def waiting_threads(self):
        return mask_to_set(self.waiting)


@dataclass(frozen=True)
class SnoopResult:
    pending: bool = False
    slot: Optional[int] = None
    state: MissState = MissState.INVALID


class MissTable(HasMissQueueParams):

    def __init__(self, params):
        super().__init__(params)

        self.cycle = 0
        self.slots = [MissEntry() for _ in range(self.n_threads)]
        self._prev_slots = [MissEntry() for _ in range(self.n_threads)]

        self._reset_step()

    def _reset_step(self):
        self._enqueued: Dict[int, Tuple[int, bool]] = {}
        self._new_misses: Dict[int, Tuple[int, bool]] = {}
        self._joins: Dict[int, int] = {}
        self._grant: Optional[int] = None
        self._wake: Optional[int] = None

    def _check_index(self, what, idx):
        if not 0 <= idx < self.n_threads:
            raise ContractViolation("{} index {} out of range [0, {}).".format(
                what, idx, self.n_threads))

    def lookup(self, addr, slots=None) -> SnoopResult:
        """Find the valid slot holding the line of `addr`."""
        if slots is None:
            slots = self.slots

        addr = self.align(addr)
        for i, e in enumerate(slots):
            if e.valid and e.addr == addr:
                return SnoopResult(pending=True, slot=i, state=e.state)
        return SnoopResult()

    def request_mask(self) -> int:
        mask = 0
        for i, e in enumerate(self.slots):
            if e.pending and i not in self._joins:
                mask |= 1 << i
        return mask

    def enqueue(self, addr, is_store, thread):
        self._check_index("Thread", thread)
        if thread in self._enqueued:
            raise ContractViolation(
                "Thread {} enqueued twice in cycle {}.".format(
                    thread, self.cycle))

        addr = self.align(addr)
        is_store = bool(is_store)
        hit = self.lookup(addr)

        if hit.pending:
            if is_store and MissState.is_read(hit.state):
                raise PromotionFault(thread, addr, hit.slot)
            if self._grant == hit.slot:
                raise ContractViolation(
                    "Slot {} joined after being granted in cycle {}.".format(
                        hit.slot, self.cycle))
            if self._wake == hit.slot:
                raise ContractViolation(
                    "Slot {} joined while being woken in cycle {}.".format(
                        hit.slot, self.cycle))

            self._joins[hit.slot] = self._joins.get(hit.slot,
                                                    0) | (1 << thread)
            logger.debug('%d: thread %d joins slot %d (0x%x)', self.cycle,
                         thread, hit.slot, addr)
        else:
            if self.slots[thread].valid:
                raise ContractViolation(
                    "Thread {} misses 0x{:x} while holding slot {}.".format(
                        thread, addr, thread))
            self._new_misses[thread] = (addr, is_store)

        self._enqueued[thread] = (addr, is_store)

    def dequeue_ready(self) -> bool:
        return self.request_mask() != 0

    def dequeue(self, grant) -> Tuple[int, bool]:
        try:
            slot = onehot_index(grant)
        except ValueError as e:
            raise ContractViolation(str(e)) from e

        self._check_index("Slot", slot)
        if not self.request_mask() & (1 << slot):
            raise ContractViolation(
                "Grant to slot {} which is not requesting.".format(slot))
        if self._grant is not None:
            raise ContractViolation("Second grant in cycle {}.".format(
                self.cycle))
        if self._wake == slot:
            raise ContractViolation(
                "Slot {} granted while being woken.".format(slot))

        self._grant = slot

        e = self.slots[slot]
        logger.debug('%d: slot %d issues 0x%x (%s)', self.cycle, slot, e.addr,
                     e.state.name)
        return e.addr, e.state == MissState.WRITE_PENDING

    def snoop(self, addr) -> SnoopResult:
        """Lookup against the table as it stood during the previous step."""
        return self.lookup(addr, self._prev_slots)

    def wake(self, slot):
        self._check_index("Slot", slot)
        if self._wake is not None:
            raise ContractViolation("Second wake in cycle {}.".format(
                self.cycle))

        e = self.slots[slot]
        if not e.valid:
            raise ContractViolation("Wake of invalid slot {}.".format(slot))
        if slot in self._joins or self._grant == slot:
            raise ContractViolation(
                "Slot {} woken while being joined or granted.".format(slot))

        self._wake = slot
        logger.debug('%d: slot %d wakes threads %s', self.cycle, slot,
                     sorted(e.waiting_threads))
        return e.waiting_threads

    def _allocate(self, next_slots):
        owners: Dict[int, int] = {}
        allocs = {}
        faults = []

        for thread in sorted(self._new_misses):
            addr, is_store = self._new_misses[thread]

            if addr in owners:
                owner = owners[addr]
                if is_store and next_slots[owner].state != MissState.WRITE_PENDING:
                    faults.append(PromotionFault(thread, addr, owner))
                    continue
                next_slots[owner].waiting |= 1 << thread
                continue

            owners[addr] = thread
            allocs[thread] = next_slots[thread] = MissEntry(
                valid=True,
                waiting=1 << thread,
                addr=addr,
                state=MissState.WRITE_PENDING
                if is_store else MissState.READ_PENDING)

        return allocs, faults

    def tick(self):
        """Commit the step.

        A store folding into a read allocated in the same step is dropped
        and reported as a `PromotionFault` once the rest of the step has
        been committed.
        """
        next_slots = [replace(e) for e in self.slots]

        allocs, faults = self._allocate(next_slots)

        for i, e in enumerate(next_slots):
            if i in self._joins:
                e.waiting |= self._joins[i]
            elif i in allocs:
                pass
            elif self._grant == i:
                e.state = _GRANT_NEXT[e.state]
            elif self._wake == i:
                next_slots[i] = MissEntry()

        for thread in allocs:
            logger.debug('%d: slot %d allocated for 0x%x (%s)', self.cycle,
                         thread, next_slots[thread].addr,
                         next_slots[thread].state.name)

        self._prev_slots = self.slots
        self.slots = next_slots
        self.cycle += 1
        self._reset_step()

        self.check()

        if faults:
            raise faults[0]

    def check(self):
        seen = {}
        for i, e in enumerate(self.slots):
            assert e.valid == (e.waiting != 0), \
                "slot {} valid={} waiting=0x{:x}".format(i, e.valid, e.waiting)
            assert e.valid == (e.state != MissState.INVALID), \
                "slot {} valid={} state={}".format(i, e.valid, e.state.name)
            if e.valid:
                assert e.addr not in seen, \
                    "slots {} and {} both hold 0x{:x}".format(
                        seen.get(e.addr), i, e.addr)
                seen[e.addr] = i

    def occupancy(self) -> List[int]:
        return [i for i, e in enumerate(self.slots) if e.valid]


class RoundRobin:
    """Round-robin grant selection, same order as `RRArbiter`."""

    def __init__(self, n):
        self.n = n
        self.last = n - 1

    def grant(self, request) -> int:
        for k in range(1, self.n + 1):
            j = (self.last + k) % self.n
            if request & (1 << j):
                return 1 << j
        return 0

    def ack(self, grant):
        self.last = onehot_index(grant)
