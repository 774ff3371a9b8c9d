from enum import IntEnum

from amaranth import Mux


class MissState(IntEnum):
    INVALID = 0
    READ_PENDING = 1
    READ_SENT = 2
    WRITE_PENDING = 3
    WRITE_SENT = 4

    @staticmethod
    def is_pending(state):
        return (state == MissState.READ_PENDING) | (state
                                                    == MissState.WRITE_PENDING)

    @staticmethod
    def is_read(state):
        return (state == MissState.READ_PENDING) | (state
                                                    == MissState.READ_SENT)

    @staticmethod
    def on_alloc(is_store):
        return Mux(is_store, MissState.WRITE_PENDING, MissState.READ_PENDING)

    @staticmethod
    def on_grant(m, state, next_state):
        with m.Switch(state):
            with m.Case(MissState.READ_PENDING):
                m.d.comb += next_state.eq(MissState.READ_SENT)
            with m.Case(MissState.WRITE_PENDING):
                m.d.comb += next_state.eq(MissState.WRITE_SENT)
            with m.Default():
                m.d.comb += next_state.eq(state)
