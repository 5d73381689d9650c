# greensched/config.py

import logging

# Time is expressed in simulated microseconds
TIME_UNIT = 1_000_000.0  # microseconds per second

# Power management
IDLE_GRACE_PERIOD = 200_000  # how long a machine must sit at zero load before power-down
MIN_WARM_MACHINES = 0  # per CPU type, only honoured by the adaptive power policy
CONSOLIDATION_THRESHOLD = 1  # max tasks on a machine considered for consolidation

# Placement
CONTAINER_TASK_LIMIT = 16
CONTAINER_MEMORY_OVERHEAD = 8  # MB reserved by every container on its host
MAX_OFFLOAD_ATTEMPTS = 3
DEFAULT_STRATEGY = "least_loaded"

# Simulated collaborator parameters
WAKE_LATENCY = 50_000
MIGRATION_LATENCY = 30_000
PERIODIC_CHECK_INTERVAL = 100_000
SLA_DEADLINE_FACTORS = {0: 1.2, 1: 1.5, 2: 2.0}  # SLA3 has no deadline
SLA_WARNING_FRACTION = 0.8

# Simulated machine model
REFERENCE_MIPS = 1000  # task work is expressed in microseconds on a machine this fast
PSTATE_SLOWDOWN = {0: 1.0, 1: 1.25, 2: 1.5, 3: 2.0}
MEMORY_WARNING_THRESHOLD = 0.9  # fraction of machine memory that triggers a warning

# Logging configuration
LOGGING_LEVEL = logging.INFO
LOGGING_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOGGING_DATEFMT = '%Y-%m-%d %H:%M:%S'
