from functools import reduce
import operator

from amaranth import *


def is_onehot(value):
    return (value != 0) & ((value & (value - 1))[:len(value)] == 0)


def lowest_bit(value):
    return (value & (~value + 1))[:len(value)]


def onehot_to_index(value):
    return reduce(operator.or_,
                  (Mux(value[i], i, 0) for i in range(len(value))), Const(0))


#
# Integer bitmask helpers
#


def index_to_onehot(idx):
    return 1 << idx


def onehot_index(mask):
    if mask <= 0 or mask & (mask - 1):
        raise ValueError("0x{:x} is not a one-hot vector.".format(mask))
    return mask.bit_length() - 1


def mask_to_set(mask):
    return {i for i in range(mask.bit_length()) if mask & (1 << i)}


def set_to_mask(indices):
    mask = 0
    for i in indices:
        mask |= 1 << i
    return mask


def lowest_bit_index(mask):
    return (mask & -mask).bit_length() - 1
