from ..session import Role
from .compute_node import ComputeNodeBringup, update_compute_node
from .head_node import HeadNodeBringup
from .standalone import StandaloneBringup

BRINGUPS = {
    Role.STANDALONE: StandaloneBringup,
    Role.COMPUTE_NODE: ComputeNodeBringup,
    Role.HEAD_NODE: HeadNodeBringup,
}

__all__ = [
    "BRINGUPS",
    "ComputeNodeBringup",
    "HeadNodeBringup",
    "StandaloneBringup",
    "update_compute_node",
]
