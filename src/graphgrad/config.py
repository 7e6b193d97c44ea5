import torch
import logging

logger = logging.getLogger(__name__)

# datatype of newly allocated buffers when no input buffer decides it
dtype = torch.float32

# Detect hardware availability
RUN_ON_GPU = torch.cuda.is_available()
RUN_ON_MPS = torch.backends.mps.is_available() and torch.backends.mps.is_built() if not RUN_ON_GPU else False
RUN_ON_CPU = not RUN_ON_GPU and not RUN_ON_MPS

# Determine active device
if RUN_ON_GPU:
    device = torch.device("cuda")
elif RUN_ON_MPS:
    device = torch.device("mps")
else:
    device = torch.device("cpu")

device_summary = f"Running on: {'GPU' if RUN_ON_GPU else 'MPS' if RUN_ON_MPS else 'CPU'}"
logger.info(device_summary)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(filename=None, level=logging.DEBUG):
    """Route the package loggers to a file (or stderr when filename is None)."""
    handler = logging.FileHandler(filename) if filename else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    package_logger = logging.getLogger("graphgrad")
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return handler
