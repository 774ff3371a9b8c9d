from amaranth import *


class RRArbiter(Elaboratable):
    """Round-robin arbiter.

    The grant is one-hot, or empty when nothing is requested. The search
    starts at the requester after the last acknowledged grant, so a
    request that stays asserted is granted within `n` acknowledged grants.
    """

    def __init__(self, n):
        self.n = n

        self.request = Signal(n)
        self.grant = Signal(n)
        self.ack = Signal()

        self.chosen = Signal(range(n))

    def elaborate(self, platform):
        m = Module()

        last = Signal(range(self.n), init=self.n - 1)

        for j in reversed(range(self.n)):
            with m.If(self.request[j]):
                m.d.comb += self.chosen.eq(j)

        for j in reversed(range(self.n)):
            with m.If(self.request[j] & (j > last)):
                m.d.comb += self.chosen.eq(j)

        for j in range(self.n):
            m.d.comb += self.grant[j].eq(self.request[j]
                                         & (self.chosen == j))

        with m.If(self.ack & self.request.any()):
            m.d.sync += last.eq(self.chosen)

        return m
