from amaranth.sim import Simulator

from missq.consts import MissState
from missq.exc import MissQueueError
from missq.mshr import MissTracker
from missq.model import MissTable
from missq.utils import index_to_onehot, mask_to_set

from collections import Counter
import argparse
import logging
import random

logger = logging.getLogger(__name__)

missq_params = dict(
    n_threads=8,
    paddr_bits=32,
    line_bytes=64,
)


class FetchPipeline:
    """Fixed-latency stand-in for the next memory level."""

    def __init__(self, latency):
        self.latency = latency
        self.in_flight = []

    def issue(self, cycle, slot, addr):
        self.in_flight.append((cycle + self.latency, slot, addr))

    def complete(self, cycle):
        if self.in_flight and self.in_flight[0][0] <= cycle:
            _, slot, addr = self.in_flight.pop(0)
            return slot, addr
        return None


def process_traffic(dut,
                    ref,
                    rng,
                    cycles=1000,
                    n_lines=8,
                    miss_rate=0.2,
                    store_ratio=0.25,
                    ready_rate=0.8,
                    latency=10,
                    check=True,
                    log_file=None,
                    stats=None):

    if stats is None:
        stats = Counter()

    n_threads = ref.n_threads
    lines = [0x10000 + ref.line_bytes * i for i in range(n_lines)]
    fetch = FetchPipeline(latency)

    async def proc(ctx):
        blocked = set()
        last_snoop = None

        for cycle in range(cycles):
            if last_snoop is not None and ctx.get(dut.snoop_resp.valid):
                pending = ctx.get(dut.snoop_resp.bits.pending)
                slot = ctx.get(dut.snoop_resp.bits.idx)
                state = MissState(ctx.get(dut.snoop_resp.bits.state))
                print(f'S {cycle} {last_snoop:x} {pending} {slot} {state.name}',
                      file=log_file)

                if check:
                    res = ref.snoop(last_snoop)
                    assert res.pending == bool(pending), (cycle, res)
                    if res.pending:
                        assert (res.slot, res.state) == (slot, state), (cycle,
                                                                        res)

            #
            # Wake
            #

            woken = set()
            woken_slot = None
            done = fetch.complete(cycle)
            if done is not None:
                woken_slot, addr = done
                ctx.set(dut.wake.valid, 1)
                ctx.set(dut.wake.bits, woken_slot)
                woken = mask_to_set(ctx.get(dut.wake_threads))
                print(f'W {cycle} {woken_slot} {addr:x} '
                      f'{" ".join(str(t) for t in sorted(woken))}',
                      file=log_file)

                expected = ref.wake(woken_slot)
                if check:
                    assert expected == woken, cycle
                stats['wakes'] += 1

            #
            # Misses
            #

            allocated = {}
            for t in range(n_threads):
                if t in blocked or rng.random() >= miss_rate:
                    continue

                addr = rng.choice(lines) + rng.randrange(ref.line_bytes)
                line = ref.align(addr)
                hit = ref.lookup(line)
                if hit.pending and hit.slot == woken_slot:
                    continue

                is_store = rng.random() < store_ratio
                if is_store and hit.pending and MissState.is_read(hit.state):
                    continue
                if is_store and allocated.get(line) is False:
                    continue
                if not hit.pending:
                    allocated.setdefault(line, is_store)

                ctx.set(dut.enq[t].valid, 1)
                ctx.set(dut.enq[t].bits.addr, addr)
                ctx.set(dut.enq[t].bits.is_store, is_store)
                ref.enqueue(addr, is_store, t)
                blocked.add(t)

                print(f'M {cycle} {t} {line:x} {"W" if is_store else "R"}',
                      file=log_file)
                stats['misses'] += 1
                if hit.pending:
                    stats['joins'] += 1

            #
            # Issue
            #

            ready = rng.random() < ready_rate
            ctx.set(dut.fetch.ready, ready)

            if check:
                assert bool(ctx.get(dut.fetch.valid)) == ref.dequeue_ready(), \
                    cycle

            if ctx.get(dut.fetch.valid) and ready:
                slot = ctx.get(dut.fetch.bits.idx)
                addr = ctx.get(dut.fetch.bits.addr)
                is_store = bool(ctx.get(dut.fetch.bits.is_store))

                expected = ref.dequeue(index_to_onehot(slot))
                if check:
                    assert expected == (addr, is_store), cycle

                fetch.issue(cycle, slot, addr)
                print(f'I {cycle} {slot} {addr:x} {"W" if is_store else "R"}',
                      file=log_file)
                stats['fetches'] += 1

            #
            # Snoop
            #

            last_snoop = rng.choice(lines)
            ctx.set(dut.snoop_addr.valid, 1)
            ctx.set(dut.snoop_addr.bits, last_snoop)

            if ctx.get(dut.promotion_fault) or ctx.get(dut.contract_violation):
                raise MissQueueError(
                    "Fault flag set at cycle {}.".format(cycle))

            print('+', file=log_file)

            ref.tick()
            await ctx.tick()

            for enq in dut.enq:
                ctx.set(enq.valid, 0)
            ctx.set(dut.wake.valid, 0)
            blocked -= woken

            if check:
                valid_mask = ctx.get(dut.valid_mask)
                assert mask_to_set(valid_mask) == set(ref.occupancy()), cycle

            logger.debug('%d: valid=0x%x pending=0x%x', cycle,
                         ctx.get(dut.valid_mask), ctx.get(dut.pending_mask))

    return proc


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Miss queue simulation')
    parser.add_argument('--threads',
                        type=int,
                        help='Number of hardware threads',
                        default=missq_params['n_threads'])
    parser.add_argument('--line-bytes',
                        type=int,
                        help='Cache line size',
                        default=missq_params['line_bytes'])
    parser.add_argument('--cycles',
                        type=int,
                        help='Cycles to simulate',
                        default=1000)
    parser.add_argument('--lines',
                        type=int,
                        help='Number of distinct cache lines touched',
                        default=8)
    parser.add_argument('--miss-rate',
                        type=float,
                        help='Per-thread miss probability per cycle',
                        default=0.2)
    parser.add_argument('--store-ratio',
                        type=float,
                        help='Fraction of misses that are stores',
                        default=0.25)
    parser.add_argument('--ready-rate',
                        type=float,
                        help='Probability that the fetch port accepts',
                        default=0.8)
    parser.add_argument('--latency',
                        type=int,
                        help='Fetch latency in cycles',
                        default=10)
    parser.add_argument('--seed', type=int, help='Random seed', default=0)
    parser.add_argument('--log',
                        type=str,
                        help='Trace output',
                        default='trace.log')
    parser.add_argument('--vcd', type=str, help='VCD output', default=None)
    parser.add_argument('--no-check',
                        action='store_true',
                        help='Skip cross-checking against the reference model')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(name)s: %(message)s')

    params = dict(missq_params,
                  n_threads=args.threads,
                  line_bytes=args.line_bytes)

    dut = MissTracker(params)
    ref = MissTable(params)
    stats = Counter()

    sim = Simulator(dut)
    sim.add_clock(1e-6)

    with open(args.log, 'w') as log_file:
        sim.add_testbench(
            process_traffic(dut,
                            ref,
                            random.Random(args.seed),
                            cycles=args.cycles,
                            n_lines=args.lines,
                            miss_rate=args.miss_rate,
                            store_ratio=args.store_ratio,
                            ready_rate=args.ready_rate,
                            latency=args.latency,
                            check=not args.no_check,
                            log_file=log_file,
                            stats=stats))

        if args.vcd is not None:
            with sim.write_vcd(args.vcd):
                sim.run()
        else:
            sim.run()

    logger.info('%d misses (%d joined), %d fetches, %d wakes in %d cycles',
                stats['misses'], stats['joins'], stats['fetches'],
                stats['wakes'], args.cycles)
