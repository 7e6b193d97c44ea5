from .base import Op, OpInstance, Pass, standard_op_name
from .elementwise import ActivationFunc, Tanh, TanhFunc, Sigmoid, SigmoidFunc, elementwise_build
from .mul import Mul
from .broadcast import Broadcast
from .loss import Mse, JointLoss, OutputLoss

__all__ = [
    "Op",
    "OpInstance",
    "Pass",
    "standard_op_name",
    "ActivationFunc",
    "Tanh",
    "TanhFunc",
    "Sigmoid",
    "SigmoidFunc",
    "elementwise_build",
    "Mul",
    "Broadcast",
    "Mse",
    "JointLoss",
    "OutputLoss",
]
