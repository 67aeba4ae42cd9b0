import os

DEBUG_EXECUTION = False
DEBUG_DETAILED = False

RECORD_KERNEL_LAUNCHES = False
RECORD_KERNEL_LAUNCHES_FOLDER = "kernel_launches"

# Directory handed to the backend when a group is created. None disables the manifest.
GROUP_CACHE_PATH = os.environ.get("SCRIPT_GRAPHS_CACHE_PATH") or None

MAX_GROUP_NAME_LENGTH = 100
