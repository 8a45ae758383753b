from .loop import RepairLoopInputError, RepairLoopResult, run_repair_loop  # noqa: F401
from .rules import REPAIR_RULES, RULE_ORDER  # noqa: F401
