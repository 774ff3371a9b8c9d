from amaranth import *

from missq.consts import MissState
from missq.exc import ConfigError


class HasMissQueueParams:

    def __init__(self, params, *args, **kwargs):
        self.params = params

        self.n_threads = params['n_threads']
        if self.n_threads < 1:
            raise ConfigError("Miss queue needs at least one thread, got {}.".format(
                self.n_threads))

        self.paddr_bits = params.get('paddr_bits', 32)

        self.line_bytes = params.get('line_bytes', 64)
        if self.line_bytes < 1 or self.line_bytes & (self.line_bytes - 1):
            raise ConfigError("Line size {} is not a power of two.".format(
                self.line_bytes))

        self.line_off_bits = (self.line_bytes - 1).bit_length()
        if self.paddr_bits <= self.line_off_bits:
            raise ConfigError(
                "Address width {} leaves no line address bits for {}-byte lines."
                .format(self.paddr_bits, self.line_bytes))

        self.line_bits = self.paddr_bits - self.line_off_bits

    def line_addr(self, addr):
        return addr[self.line_off_bits:self.paddr_bits]

    def line_to_addr(self, line):
        return Cat(Const(0, self.line_off_bits), line)

    def align(self, addr):
        return addr & ((1 << self.paddr_bits) - self.line_bytes)


class MissReq(HasMissQueueParams):

    def __init__(self, params, name=None):
        super().__init__(params)

        if name is None:
            name = 'miss_req'

        self.addr = Signal(self.paddr_bits, name=f'{name}_addr')
        self.is_store = Signal(name=f'{name}_is_store')

    def eq(self, rhs):
        return [self.addr.eq(rhs.addr), self.is_store.eq(rhs.is_store)]


class FetchReq(HasMissQueueParams):

    def __init__(self, params, name=None):
        super().__init__(params)

        if name is None:
            name = 'fetch_req'

        self.addr = Signal(self.paddr_bits, name=f'{name}_addr')
        self.is_store = Signal(name=f'{name}_is_store')
        self.idx = Signal(range(self.n_threads), name=f'{name}_idx')

    def eq(self, rhs):
        return [
            self.addr.eq(rhs.addr),
            self.is_store.eq(rhs.is_store),
            self.idx.eq(rhs.idx),
        ]


class SnoopResp(HasMissQueueParams):

    def __init__(self, params, name=None):
        super().__init__(params)

        if name is None:
            name = 'snoop_resp'

        self.pending = Signal(name=f'{name}_pending')
        self.idx = Signal(range(self.n_threads), name=f'{name}_idx')
        self.state = Signal(MissState, name=f'{name}_state')

    def eq(self, rhs):
        return [
            self.pending.eq(rhs.pending),
            self.idx.eq(rhs.idx),
            self.state.eq(rhs.state),
        ]
