from rich.console import Console
from rich.table import Table
from rich.text import Text

import argparse
import csv

KIND_STYLE = {
    'R': 'green',
    'W': 'magenta',
}


class Fetch:

    def __init__(self, slot, line, kind, cycle):
        self.slot = slot
        self.line = line
        self.kind = kind

        self.alloc_cycle = cycle
        self.issue_cycle = None
        self.wake_cycle = None

        self.waiters = [slot]

    def join(self, thread):
        self.waiters.append(thread)

    def retire(self, table):
        issue = '-' if self.issue_cycle is None else str(self.issue_cycle)
        latency = self.wake_cycle - self.alloc_cycle

        table.add_row(str(self.slot), f'{self.line:x}',
                      Text(self.kind, style=KIND_STYLE[self.kind]),
                      str(self.alloc_cycle), issue, str(self.wake_cycle),
                      str(latency),
                      ' '.join(str(t) for t in sorted(self.waiters)))

        return (self.slot, self.line, self.kind, self.alloc_cycle,
                self.issue_cycle, self.wake_cycle, latency)


class TraceParser:

    def __init__(self):
        self.fetches = {}

        self.snoops = 0
        self.snoop_hits = 0
        self.latencies = []

    def parse(self, fin, console, csv_file=None):
        self.fetches.clear()

        table = Table(title='Miss trace')

        table.add_column('Slot', justify='right')
        table.add_column('Line', justify='right', style='cyan', no_wrap=True)
        table.add_column('Op')
        table.add_column('Alloc', justify='right')
        table.add_column('Issue', justify='right')
        table.add_column('Wake', justify='right')
        table.add_column('Latency', justify='right')
        table.add_column('Waiters')

        writer = None
        if csv_file is not None:
            writer = csv.writer(csv_file)
            writer.writerow([
                'slot', 'line', 'op', 'alloc', 'issue', 'wake', 'latency'
            ])

        for line in fin.readlines():
            line = line.strip()

            if not line: continue

            cmd, *args = line.split()

            if cmd == '+':
                continue

            elif cmd == 'M':
                cycle = int(args[0])
                thread = int(args[1])
                addr = int(args[2], base=16)
                kind = args[3]

                for f in self.fetches.values():
                    if f.line == addr:
                        f.join(thread)
                        break
                else:
                    if self.fetches.get(thread) is not None:
                        raise ValueError(
                            f'Slot {thread} allocated twice at cycle {cycle}')
                    self.fetches[thread] = Fetch(thread, addr, kind, cycle)

            elif cmd == 'I':
                cycle = int(args[0])
                slot = int(args[1])

                fetch = self.fetches.get(slot)
                if fetch is None:
                    raise ValueError(f'Issue of empty slot {slot}')
                fetch.issue_cycle = cycle

            elif cmd == 'W':
                cycle = int(args[0])
                slot = int(args[1])
                threads = sorted(int(t) for t in args[3:])

                fetch = self.fetches.pop(slot, None)
                if fetch is None:
                    raise ValueError(f'Wake of empty slot {slot}')
                if sorted(fetch.waiters) != threads:
                    raise ValueError(
                        f'Slot {slot} woke {threads}, expected {sorted(fetch.waiters)}'
                    )

                fetch.wake_cycle = cycle
                row = fetch.retire(table)
                self.latencies.append(row[-1])

                if writer is not None:
                    writer.writerow('' if v is None else v for v in row)

            elif cmd == 'S':
                self.snoops += 1
                if args[2] != '0':
                    self.snoop_hits += 1

        for fetch in self.fetches.values():
            table.add_row(str(fetch.slot), f'{fetch.line:x}',
                          Text(fetch.kind, style=KIND_STYLE[fetch.kind]),
                          str(fetch.alloc_cycle), '-' if fetch.issue_cycle
                          is None else str(fetch.issue_cycle),
                          Text('in flight', style='bold yellow'), '',
                          ' '.join(str(t) for t in sorted(fetch.waiters)))

        console.print(table)

        if self.latencies:
            console.print(
                f'{len(self.latencies)} fetches, average latency '
                f'{sum(self.latencies) / len(self.latencies):.1f} cycles')
        if self.snoops:
            console.print(f'{self.snoop_hits}/{self.snoops} snoops hit')


if __name__ == '__main__':
    arg_parser = argparse.ArgumentParser(description='Miss trace analyzer')
    arg_parser.add_argument('trace',
                            type=str,
                            nargs='?',
                            help='Trace written by sim.py',
                            default='trace.log')
    arg_parser.add_argument('--csv', type=str, help='CSV output', default=None)
    args = arg_parser.parse_args()

    console = Console()

    parser = TraceParser()

    with console.pager(styles=True):
        with open(args.trace, 'r') as fin:
            if args.csv is not None:
                with open(args.csv, 'w', newline='') as csv_out:
                    parser.parse(fin, console=console, csv_file=csv_out)
            else:
                parser.parse(fin, console=console)
