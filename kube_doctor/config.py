import os

DEFAULT_TIMEOUT = int(os.environ.get("KUBE_DOCTOR_TIMEOUT", "30"))
LOG_LEVEL = os.environ.get("KUBE_DOCTOR_LOG_LEVEL", "INFO").upper()

MAX_PODS = 500
MAX_EVENTS = 100
MAX_LOG_BYTES = 50 * 1024
LOG_TRUNCATION_MARKER = "\n... [logs truncated at 50KB]"
DEFAULT_TAIL_LINES = 100

ALL_NAMESPACE_ALIASES = ("", "all", "*")
