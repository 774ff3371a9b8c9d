import logging

from missq.consts import MissState
from missq.exc import PromotionFault, ContractViolation
from missq.model import SnoopResult
from missq.utils import index_to_onehot, lowest_bit_index, mask_to_set

logger = logging.getLogger(__name__)


class MissQueueDriver:
    """Step-by-step access to a simulated `MissQueue`.

    Mirrors the `MissTable` operations on top of an Amaranth testbench
    context. Inputs set during a step are cleared by `tick`. Fault flags
    raised by the hardware are turned into `PromotionFault` and
    `ContractViolation`.
    """

    def __init__(self, dut, ctx):
        self.dut = dut
        self.ctx = ctx
        self.cycle = 0

        self._enq_addrs = {}

    def _check_faults(self):
        promotion = self.ctx.get(self.dut.promotion_fault)
        if promotion:
            thread = lowest_bit_index(promotion)
            raise PromotionFault(thread, self._enq_addrs[thread])

        if self.ctx.get(self.dut.contract_violation):
            raise ContractViolation(
                "Miss queue flagged a contract violation in cycle {}.".format(
                    self.cycle))

    def enqueue(self, addr, is_store, thread):
        enq = self.dut.enq[thread]
        self.ctx.set(enq.valid, 1)
        self.ctx.set(enq.bits.addr, addr)
        self.ctx.set(enq.bits.is_store, int(bool(is_store)))
        self._enq_addrs[thread] = addr

        self._check_faults()

    def request_mask(self):
        return self.ctx.get(self.dut.deq_request)

    def dequeue_ready(self):
        return bool(self.ctx.get(self.dut.deq_ready))

    def dequeue(self, grant):
        self.ctx.set(self.dut.deq_grant, grant)
        self.ctx.set(self.dut.deq_ack, 1)
        self._check_faults()

        return (self.ctx.get(self.dut.deq_addr),
                bool(self.ctx.get(self.dut.deq_is_store)))

    def dequeue_slot(self, slot):
        return self.dequeue(index_to_onehot(slot))

    def snoop(self, addr):
        """Present a snoop address. The answer is `snoop_result` next step."""
        self.ctx.set(self.dut.snoop_addr.valid, 1)
        self.ctx.set(self.dut.snoop_addr.bits, addr)

    def snoop_result(self):
        resp = self.dut.snoop_resp
        if not self.ctx.get(resp.valid) or not self.ctx.get(resp.bits.pending):
            return SnoopResult()

        return SnoopResult(pending=True,
                           slot=self.ctx.get(resp.bits.idx),
                           state=MissState(self.ctx.get(resp.bits.state)))

    def wake(self, slot):
        self.ctx.set(self.dut.wake.valid, 1)
        self.ctx.set(self.dut.wake.bits, slot)
        self._check_faults()

        return mask_to_set(self.ctx.get(self.dut.wake_threads))

    def valid_mask(self):
        return self.ctx.get(self.dut.valid_mask)

    def pending_mask(self):
        return self.ctx.get(self.dut.pending_mask)

    async def tick(self):
        self._check_faults()

        await self.ctx.tick()
        self.cycle += 1

        for enq in self.dut.enq:
            self.ctx.set(enq.valid, 0)
        self.ctx.set(self.dut.deq_grant, 0)
        self.ctx.set(self.dut.deq_ack, 0)
        self.ctx.set(self.dut.snoop_addr.valid, 0)
        self.ctx.set(self.dut.wake.valid, 0)
        self._enq_addrs = {}

        logger.debug('%d: valid=0x%x pending=0x%x', self.cycle,
                     self.valid_mask(), self.pending_mask())
