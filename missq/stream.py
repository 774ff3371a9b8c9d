from amaranth import *


def _default_name(cls, name):
    if name is not None:
        return name
    return cls.__name__.lower()


class Valid:

    def __init__(self, cls, *args, name=None, **kwargs):
        name = _default_name(cls, name)

        self.bits = cls(*args, name=f'{name}_bits', **kwargs)
        self.valid = Signal(name=f'{name}_valid')

    def eq(self, rhs):
        return [
            self.bits.eq(rhs.bits),
            self.valid.eq(rhs.valid),
        ]


class Decoupled:

    def __init__(self, cls, *args, name=None, **kwargs):
        name = _default_name(cls, name)

        self.bits = cls(*args, name=f'{name}_bits', **kwargs)
        self.valid = Signal(name=f'{name}_valid')
        self.ready = Signal(name=f'{name}_ready')

    @property
    def fire(self):
        return self.valid & self.ready
