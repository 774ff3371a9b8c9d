import random

import pytest

from missq.consts import MissState
from missq.exc import PromotionFault, ContractViolation
from missq.mshr import MissQueue, MissTracker
from missq.model import MissTable, RoundRobin
from missq.sim import MissQueueDriver
from missq.utils import index_to_onehot, set_to_mask
from missq.test import run_test

params = dict(n_threads=8, paddr_bits=32, line_bytes=64)


def miss_queue_test(bench_fn, params=params):
    dut = MissQueue(params)

    async def bench(ctx):
        await bench_fn(MissQueueDriver(dut, ctx))

    run_test(dut, bench, sync=True)


def test_join_issue_wake():

    async def bench(mq):
        mq.enqueue(0x1000, False, 2)
        await mq.tick()
        assert mq.valid_mask() == 0b100
        assert mq.pending_mask() == 0b100

        mq.enqueue(0x1000, False, 5)
        assert not mq.dequeue_ready()
        await mq.tick()
        assert mq.valid_mask() == 0b100

        assert mq.dequeue_ready()
        assert mq.request_mask() == 0b100
        assert mq.dequeue_slot(2) == (0x1000, False)
        await mq.tick()
        assert mq.pending_mask() == 0
        assert not mq.dequeue_ready()

        assert mq.wake(2) == {2, 5}
        await mq.tick()
        assert mq.valid_mask() == 0

    miss_queue_test(bench)


def test_store_miss():

    async def bench(mq):
        mq.enqueue(0x2000, True, 3)
        await mq.tick()

        mq.snoop(0x2000)
        assert mq.dequeue_slot(3) == (0x2000, True)
        await mq.tick()

        res = mq.snoop_result()
        assert res.pending
        assert res.slot == 3
        assert res.state == MissState.WRITE_PENDING

        mq.snoop(0x2000)
        await mq.tick()
        assert mq.snoop_result().state == MissState.WRITE_SENT

        assert mq.wake(3) == {3}
        await mq.tick()
        assert mq.valid_mask() == 0

    miss_queue_test(bench)


def test_promotion_fault():

    async def bench(mq):
        mq.enqueue(0x3000, False, 1)
        await mq.tick()

        with pytest.raises(PromotionFault) as exc_info:
            mq.enqueue(0x3000, True, 4)
        assert exc_info.value.thread == 4

    miss_queue_test(bench)


def test_promotion_fault_suppresses_join():
    dut = MissQueue(params)

    async def bench(ctx):
        ctx.set(dut.enq[1].valid, 1)
        ctx.set(dut.enq[1].bits.addr, 0x3000)
        await ctx.tick()

        ctx.set(dut.enq[1].valid, 0)
        ctx.set(dut.enq[4].valid, 1)
        ctx.set(dut.enq[4].bits.addr, 0x3000)
        ctx.set(dut.enq[4].bits.is_store, 1)
        assert ctx.get(dut.promotion_fault) == 0b10000
        assert not ctx.get(dut.contract_violation)
        await ctx.tick()

        ctx.set(dut.enq[4].valid, 0)
        ctx.set(dut.wake.valid, 1)
        ctx.set(dut.wake.bits, 1)
        assert ctx.get(dut.wake_threads) == 0b10

    run_test(dut, bench, sync=True)


def test_same_step_misses():

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        mq.enqueue(0x2000, True, 1)
        mq.enqueue(0x1020, False, 6)
        mq.enqueue(0x2000, False, 4)
        await mq.tick()

        assert mq.valid_mask() == 0b11
        assert mq.wake(0) == {0, 6}
        await mq.tick()
        assert mq.wake(1) == {1, 4}
        await mq.tick()
        assert mq.valid_mask() == 0

    miss_queue_test(bench)


def test_same_step_store_joins_read():

    async def bench(mq):
        mq.enqueue(0x2000, False, 2)

        with pytest.raises(PromotionFault) as exc_info:
            mq.enqueue(0x2000, True, 5)
            await mq.tick()
        assert exc_info.value.thread == 5

    miss_queue_test(bench)


def test_same_step_promotion_keeps_wake():
    dut = MissQueue(params)

    async def bench(ctx):
        ctx.set(dut.enq[0].valid, 1)
        ctx.set(dut.enq[0].bits.addr, 0x1000)
        await ctx.tick()
        ctx.set(dut.enq[0].valid, 0)

        ctx.set(dut.wake.valid, 1)
        ctx.set(dut.wake.bits, 0)
        ctx.set(dut.enq[2].valid, 1)
        ctx.set(dut.enq[2].bits.addr, 0x5000)
        ctx.set(dut.enq[5].valid, 1)
        ctx.set(dut.enq[5].bits.addr, 0x5000)
        ctx.set(dut.enq[5].bits.is_store, 1)
        assert ctx.get(dut.wake_threads) == 0b1
        assert ctx.get(dut.promotion_fault) == 0b100000
        assert not ctx.get(dut.contract_violation)
        await ctx.tick()
        ctx.set(dut.enq[2].valid, 0)
        ctx.set(dut.enq[5].valid, 0)

        assert ctx.get(dut.valid_mask) == 0b100
        ctx.set(dut.wake.bits, 2)
        assert ctx.get(dut.wake_threads) == 0b100

    run_test(dut, bench, sync=True)


def test_wake_invalid_slot():

    async def bench(mq):
        with pytest.raises(ContractViolation):
            mq.wake(3)

    miss_queue_test(bench)


def test_wake_and_join_same_slot():

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        await mq.tick()

        mq.wake(0)
        with pytest.raises(ContractViolation):
            mq.enqueue(0x1000, False, 1)

    miss_queue_test(bench)


def test_wake_and_grant_same_slot():

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        await mq.tick()

        mq.dequeue_slot(0)
        with pytest.raises(ContractViolation):
            mq.wake(0)

    miss_queue_test(bench)


def test_alloc_into_busy_slot():

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        await mq.tick()

        with pytest.raises(ContractViolation):
            mq.enqueue(0x2000, False, 0)

    miss_queue_test(bench)


@pytest.mark.parametrize("grant", [0, 0b11, 0b100])
def test_bad_grant(grant):

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        mq.enqueue(0x2000, False, 1)
        await mq.tick()

        with pytest.raises(ContractViolation):
            mq.dequeue(grant)

    miss_queue_test(bench)


def test_grant_to_joined_slot():

    async def bench(mq):
        mq.enqueue(0x1000, False, 0)
        await mq.tick()

        mq.enqueue(0x1000, False, 1)
        with pytest.raises(ContractViolation):
            mq.dequeue_slot(0)

    miss_queue_test(bench)


def test_snoop_latency():

    async def bench(mq):
        mq.enqueue(0x1000, False, 2)
        mq.snoop(0x1000)
        await mq.tick()
        assert not mq.snoop_result().pending

        mq.snoop(0x1010)
        await mq.tick()
        res = mq.snoop_result()
        assert res.pending
        assert res.slot == 2
        assert res.state == MissState.READ_PENDING

        await mq.tick()
        assert not mq.snoop_result().pending

    miss_queue_test(bench)


@pytest.mark.parametrize("n_threads,seed", [(2, 0), (4, 1), (8, 2)])
def test_matches_model(n_threads, seed):
    p = dict(params, n_threads=n_threads)
    ref = MissTable(p)
    arb = RoundRobin(n_threads)
    rng = random.Random(seed)

    lines = [0x40000 + 0x40 * i for i in range(n_threads)]

    async def bench(mq):
        blocked = set()
        in_flight = []
        last_snoop = None

        for _ in range(400):
            assert mq.valid_mask() == set_to_mask(ref.occupancy())

            if last_snoop is not None:
                assert mq.snoop_result() == ref.snoop(last_snoop)

            woken = set()
            woken_slot = None
            if in_flight and rng.random() < 0.4:
                woken_slot = in_flight.pop(rng.randrange(len(in_flight)))
                woken = ref.wake(woken_slot)
                assert mq.wake(woken_slot) == woken

            allocated = {}
            for t in range(n_threads):
                if t in blocked or rng.random() > 0.3:
                    continue

                addr = rng.choice(lines) + rng.randrange(0x40)
                hit = ref.lookup(addr)
                if hit.pending and hit.slot == woken_slot:
                    continue
                line = ref.align(addr)
                is_store = rng.random() < 0.25
                if is_store and hit.pending and MissState.is_read(hit.state):
                    continue
                if is_store and allocated.get(line) is False:
                    continue
                if not hit.pending:
                    allocated.setdefault(line, is_store)

                ref.enqueue(addr, is_store, t)
                mq.enqueue(addr, is_store, t)
                blocked.add(t)

            assert mq.request_mask() == ref.request_mask()
            assert mq.dequeue_ready() == ref.dequeue_ready()

            grant = arb.grant(ref.request_mask())
            if grant and rng.random() < 0.8:
                arb.ack(grant)
                assert mq.dequeue(grant) == ref.dequeue(grant)
                in_flight.append(grant.bit_length() - 1)

            last_snoop = rng.choice(lines)
            mq.snoop(last_snoop)

            ref.tick()
            await mq.tick()
            blocked -= woken

    miss_queue_test(bench, p)


def test_tracker_fetch_port():
    dut = MissTracker(dict(params, n_threads=4))

    async def bench(ctx):
        for t in range(4):
            ctx.set(dut.enq[t].valid, 1)
            ctx.set(dut.enq[t].bits.addr, 0x1000 * (t + 1))
            ctx.set(dut.enq[t].bits.is_store, t & 1)
        assert not ctx.get(dut.fetch.valid)
        await ctx.tick()

        for t in range(4):
            ctx.set(dut.enq[t].valid, 0)

        # Back-pressure holds the current choice.
        ctx.set(dut.fetch.ready, 0)
        for _ in range(3):
            assert ctx.get(dut.fetch.valid)
            assert ctx.get(dut.fetch.bits.idx) == 0
            await ctx.tick()
        assert ctx.get(dut.pending_mask) == 0b1111

        ctx.set(dut.fetch.ready, 1)
        issued = []
        for _ in range(4):
            assert ctx.get(dut.fetch.valid)
            issued.append((ctx.get(dut.fetch.bits.idx),
                           ctx.get(dut.fetch.bits.addr),
                           ctx.get(dut.fetch.bits.is_store)))
            await ctx.tick()

        assert issued == [(t, 0x1000 * (t + 1), t & 1) for t in range(4)]
        assert not ctx.get(dut.fetch.valid)
        assert ctx.get(dut.pending_mask) == 0
        assert ctx.get(dut.valid_mask) == 0b1111

        ctx.set(dut.wake.valid, 1)
        ctx.set(dut.wake.bits, 2)
        assert ctx.get(dut.wake_threads) == 0b100
        assert not ctx.get(dut.contract_violation)
        await ctx.tick()
        ctx.set(dut.wake.valid, 0)
        assert ctx.get(dut.valid_mask) == 0b1011

    run_test(dut, bench, sync=True)


def test_tracker_rotates_between_refills():
    dut = MissTracker(dict(params, n_threads=4))

    async def bench(ctx):
        ctx.set(dut.fetch.ready, 1)

        ctx.set(dut.enq[1].valid, 1)
        ctx.set(dut.enq[1].bits.addr, 0x100)
        ctx.set(dut.enq[3].valid, 1)
        ctx.set(dut.enq[3].bits.addr, 0x300)
        await ctx.tick()
        ctx.set(dut.enq[1].valid, 0)
        ctx.set(dut.enq[3].valid, 0)

        assert ctx.get(dut.fetch.bits.idx) == 1
        await ctx.tick()

        # Slot 0 arrives after slot 1 was granted, slot 3 goes first.
        ctx.set(dut.enq[0].valid, 1)
        ctx.set(dut.enq[0].bits.addr, 0x500)
        assert ctx.get(dut.fetch.bits.idx) == 3
        await ctx.tick()
        ctx.set(dut.enq[0].valid, 0)

        assert ctx.get(dut.fetch.bits.idx) == 0
        assert ctx.get(dut.fetch.bits.addr) == 0x500
        await ctx.tick()
        assert not ctx.get(dut.fetch.valid)

    run_test(dut, bench, sync=True)
