from amaranth import *

from missq.consts import MissState
from missq.types import HasMissQueueParams, MissReq, FetchReq, SnoopResp
from missq.arbiter import RRArbiter
from missq.utils import is_onehot, lowest_bit, onehot_to_index

from missq.stream import Valid, Decoupled


class MissEntry(HasMissQueueParams):

    def __init__(self, params, name=None):
        super().__init__(params)

        if name is None:
            name = 'entry'

        self.valid = Signal(name=f'{name}_valid')
        self.waiting = Signal(self.n_threads, name=f'{name}_waiting')
        self.line = Signal(self.line_bits, name=f'{name}_line')
        self.state = Signal(MissState, name=f'{name}_state')

    @property
    def pending(self):
        return self.valid & MissState.is_pending(self.state)


class DuplicateDetector(HasMissQueueParams, Elaboratable):
    """Match a line address against every valid entry."""

    def __init__(self, params, entries):
        super().__init__(params)

        self.entries = entries

        self.line = Signal(self.line_bits)

        self.hit_mask = Signal(self.n_threads)
        self.hit = Signal()
        self.idx = Signal(range(self.n_threads))
        self.state = Signal(MissState)

    def elaborate(self, platform):
        m = Module()

        for i, e in enumerate(self.entries):
            m.d.comb += self.hit_mask[i].eq(e.valid & (e.line == self.line))

        m.d.comb += self.hit.eq(self.hit_mask.any())

        for i in reversed(range(self.n_threads)):
            with m.If(self.hit_mask[i]):
                m.d.comb += [
                    self.idx.eq(i),
                    self.state.eq(self.entries[i].state),
                ]

        return m


class MissQueue(HasMissQueueParams, Elaboratable):

    def __init__(self, params):
        super().__init__(params)

        self.enq = [
            Valid(MissReq, params, name=f'enq{i}')
            for i in range(self.n_threads)
        ]

        self.deq_request = Signal(self.n_threads)
        self.deq_ready = Signal()
        self.deq_grant = Signal(self.n_threads)
        self.deq_ack = Signal()
        self.deq_idx = Signal(range(self.n_threads))
        self.deq_addr = Signal(self.paddr_bits)
        self.deq_is_store = Signal()

        self.snoop_addr = Valid(Signal, self.paddr_bits, name='snoop_addr')
        self.snoop_resp = Valid(SnoopResp, params, name='snoop_resp')

        self.wake = Valid(Signal, range(self.n_threads), name='wake')
        self.wake_threads = Signal(self.n_threads)

        self.valid_mask = Signal(self.n_threads)
        self.pending_mask = Signal(self.n_threads)

        self.promotion_fault = Signal(self.n_threads)
        self.contract_violation = Signal()

    def elaborate(self, platform):
        m = Module()

        entries = [
            MissEntry(self.params, name=f'entry{i}')
            for i in range(self.n_threads)
        ]

        for i, e in enumerate(entries):
            m.d.comb += [
                self.valid_mask[i].eq(e.valid),
                self.pending_mask[i].eq(e.pending),
            ]

        #
        # Duplicate detection against the entries at the start of the step
        #

        enq_lines = [self.line_addr(enq.bits.addr) for enq in self.enq]

        hits = []
        for w in range(self.n_threads):
            det = DuplicateDetector(self.params, entries)
            setattr(m.submodules, f'enq_det{w}', det)
            m.d.comb += det.line.eq(enq_lines[w])

            hit = Signal(self.n_threads, name=f'hit{w}')
            m.d.comb += hit.eq(Mux(self.enq[w].valid, det.hit_mask, 0))
            hits.append(hit)

        # Misses to a line nobody holds yet. The lowest thread among
        # same-step misses to one line allocates, the others join it.
        new_miss = Signal(self.n_threads)
        for w in range(self.n_threads):
            m.d.comb += new_miss[w].eq(self.enq[w].valid & ~hits[w].any())

        new_join = []
        alloc_req = Signal(self.n_threads)
        for w in range(self.n_threads):
            same_line = Signal(self.n_threads, name=f'same_line{w}')
            for i in range(w):
                m.d.comb += same_line[i].eq(new_miss[i]
                                            & (enq_lines[i] == enq_lines[w]))

            join = Signal(self.n_threads, name=f'new_join{w}')
            m.d.comb += [
                join.eq(Mux(new_miss[w], lowest_bit(same_line), 0)),
                alloc_req[w].eq(new_miss[w] & ~same_line.any()),
            ]
            new_join.append(join)

        #
        # Read-to-write promotion is unsupported
        #

        for w in range(self.n_threads):
            promote = 0
            for i in range(self.n_threads):
                promote |= hits[w][i] & MissState.is_read(entries[i].state)
                promote |= new_join[w][i] & ~self.enq[i].bits.is_store
            m.d.comb += self.promotion_fault[w].eq(self.enq[w].bits.is_store
                                                   & promote)

        join_existing = [
            Signal(self.n_threads, name=f'join_existing{i}')
            for i in range(self.n_threads)
        ]
        join_new = [
            Signal(self.n_threads, name=f'join_new{i}')
            for i in range(self.n_threads)
        ]
        for i in range(self.n_threads):
            for w in range(self.n_threads):
                m.d.comb += [
                    join_existing[i][w].eq(hits[w][i]
                                           & ~self.promotion_fault[w]),
                    join_new[i][w].eq(new_join[w][i]
                                      & ~self.promotion_fault[w]),
                ]

        alloc_conflict = Signal(self.n_threads)
        alloc = Signal(self.n_threads)
        for i, e in enumerate(entries):
            m.d.comb += [
                alloc_conflict[i].eq(alloc_req[i] & e.valid),
                alloc[i].eq(alloc_req[i] & ~e.valid),
            ]

        #
        # Issue
        #

        for i, e in enumerate(entries):
            m.d.comb += self.deq_request[i].eq(e.pending
                                               & ~join_existing[i].any())
        m.d.comb += self.deq_ready.eq(self.deq_request.any())

        grant_ok = is_onehot(self.deq_grant) & (
            (self.deq_grant & ~self.deq_request) == 0)
        grant_conflict = self.deq_ack & ~grant_ok
        grant = Signal(self.n_threads)
        m.d.comb += grant.eq(Mux(self.deq_ack & grant_ok, self.deq_grant, 0))

        entry_lines = Array(e.line for e in entries)
        entry_states = Array(e.state for e in entries)
        entry_waiting = Array(e.waiting for e in entries)
        entry_valids = Array(e.valid for e in entries)

        m.d.comb += [
            self.deq_idx.eq(onehot_to_index(self.deq_grant)),
            self.deq_addr.eq(self.line_to_addr(entry_lines[self.deq_idx])),
            self.deq_is_store.eq(
                ~MissState.is_read(entry_states[self.deq_idx])),
        ]

        #
        # Wake
        #

        wake_valid = entry_valids[self.wake.bits]
        with m.If(self.wake.valid & wake_valid):
            m.d.comb += self.wake_threads.eq(entry_waiting[self.wake.bits])

        wake_conflict = Signal()
        for i in range(self.n_threads):
            with m.If(self.wake.valid & (self.wake.bits == i)
                      & (join_existing[i].any() | alloc_req[i] | grant[i])):
                m.d.comb += wake_conflict.eq(1)

        m.d.comb += self.contract_violation.eq(
            (self.wake.valid & ~wake_valid) | wake_conflict
            | alloc_conflict.any() | grant_conflict)

        #
        # Commit
        #

        for i, e in enumerate(entries):
            granted_state = Signal(MissState, name=f'granted_state{i}')
            MissState.on_grant(m, e.state, granted_state)

            with m.If(join_existing[i].any()):
                m.d.sync += e.waiting.eq(e.waiting | join_existing[i])

            with m.Elif(alloc[i]):
                m.d.sync += [
                    e.valid.eq(1),
                    e.waiting.eq(Const(1 << i, self.n_threads) | join_new[i]),
                    e.line.eq(enq_lines[i]),
                    e.state.eq(MissState.on_alloc(self.enq[i].bits.is_store)),
                ]

            with m.Elif(grant[i]):
                m.d.sync += e.state.eq(granted_state)

            with m.Elif(self.wake.valid & (self.wake.bits == i) & e.valid):
                m.d.sync += [
                    e.valid.eq(0),
                    e.waiting.eq(0),
                    e.state.eq(MissState.INVALID),
                ]

        #
        # Snoop
        #

        snoop_det = m.submodules.snoop_det = DuplicateDetector(
            self.params, entries)
        m.d.comb += snoop_det.line.eq(self.line_addr(self.snoop_addr.bits))

        m.d.sync += [
            self.snoop_resp.valid.eq(self.snoop_addr.valid),
            self.snoop_resp.bits.pending.eq(self.snoop_addr.valid
                                            & snoop_det.hit),
            self.snoop_resp.bits.idx.eq(snoop_det.idx),
            self.snoop_resp.bits.state.eq(snoop_det.state),
        ]

        return m


class MissTracker(HasMissQueueParams, Elaboratable):
    """Miss queue with a round-robin issue arbiter and a fetch port."""

    def __init__(self, params):
        super().__init__(params)

        self.enq = [
            Valid(MissReq, params, name=f'enq{i}')
            for i in range(self.n_threads)
        ]

        self.fetch = Decoupled(FetchReq, params, name='fetch')

        self.snoop_addr = Valid(Signal, self.paddr_bits, name='snoop_addr')
        self.snoop_resp = Valid(SnoopResp, params, name='snoop_resp')

        self.wake = Valid(Signal, range(self.n_threads), name='wake')
        self.wake_threads = Signal(self.n_threads)

        self.valid_mask = Signal(self.n_threads)
        self.pending_mask = Signal(self.n_threads)

        self.promotion_fault = Signal(self.n_threads)
        self.contract_violation = Signal()

    def elaborate(self, platform):
        m = Module()

        mq = m.submodules.miss_queue = MissQueue(self.params)
        arb = m.submodules.arbiter = RRArbiter(self.n_threads)

        for w in range(self.n_threads):
            m.d.comb += mq.enq[w].eq(self.enq[w])

        m.d.comb += [
            arb.request.eq(mq.deq_request),
            arb.ack.eq(self.fetch.fire),
            mq.deq_grant.eq(arb.grant),
            mq.deq_ack.eq(self.fetch.fire),
            self.fetch.valid.eq(mq.deq_ready),
            self.fetch.bits.addr.eq(mq.deq_addr),
            self.fetch.bits.is_store.eq(mq.deq_is_store),
            self.fetch.bits.idx.eq(mq.deq_idx),
        ]

        m.d.comb += [
            mq.snoop_addr.eq(self.snoop_addr),
            self.snoop_resp.eq(mq.snoop_resp),
            mq.wake.eq(self.wake),
            self.wake_threads.eq(mq.wake_threads),
            self.valid_mask.eq(mq.valid_mask),
            self.pending_mask.eq(mq.pending_mask),
            self.promotion_fault.eq(mq.promotion_fault),
            self.contract_violation.eq(mq.contract_violation),
        ]

        return m

    def ports(self):
        ports = []
        for enq in self.enq:
            ports += [enq.valid, enq.bits.addr, enq.bits.is_store]
        ports += [
            self.fetch.valid,
            self.fetch.ready,
            self.fetch.bits.addr,
            self.fetch.bits.is_store,
            self.fetch.bits.idx,
            self.snoop_addr.valid,
            self.snoop_addr.bits,
            self.snoop_resp.valid,
            self.snoop_resp.bits.pending,
            self.snoop_resp.bits.idx,
            self.snoop_resp.bits.state,
            self.wake.valid,
            self.wake.bits,
            self.wake_threads,
            self.valid_mask,
            self.pending_mask,
            self.promotion_fault,
            self.contract_violation,
        ]
        return ports
