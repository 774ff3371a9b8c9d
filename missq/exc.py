class MissQueueError(Exception):
    """Base class of all miss queue faults."""


class PromotionFault(MissQueueError):
    """A store joined a line that is being fetched for a read.

    Promoting an in-flight read miss into a write miss is not supported.
    The join is dropped and the fault is fatal for the step.
    """

    def __init__(self, thread, addr, slot=None):
        msg = "Store miss from thread {} to 0x{:x} collides with a read miss".format(
            thread, addr)
        if slot is not None:
            msg += " in slot {}".format(slot)
        super().__init__(msg + ".")

        self.thread = thread
        self.addr = addr
        self.slot = slot


class ContractViolation(MissQueueError):
    """The caller broke an operation precondition."""


class ConfigError(ValueError):
    pass
