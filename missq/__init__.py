from .consts import MissState
from .exc import MissQueueError, PromotionFault, ContractViolation, ConfigError
from .mshr import MissQueue, MissTracker
from .model import MissTable
