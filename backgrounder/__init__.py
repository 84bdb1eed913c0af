from backgrounder.dispatch import CeleryDispatcher, ImmediateDispatcher, JobDispatcher, use_dispatcher
from backgrounder.errors import BackgrounderError, ConfigurationError, DispatchError, InvalidCacheName
from backgrounder.jobs import PROCESS, STORE, JobDescriptor
from backgrounder.mount import mount_uploader
from backgrounder.orm import EnqueuePolicy, process_in_background, store_in_background, supports_processing_flag
from backgrounder.uploader import Uploader

__all__ = [
    "BackgrounderError",
    "CeleryDispatcher",
    "ConfigurationError",
    "DispatchError",
    "EnqueuePolicy",
    "ImmediateDispatcher",
    "InvalidCacheName",
    "JobDescriptor",
    "JobDispatcher",
    "PROCESS",
    "STORE",
    "Uploader",
    "mount_uploader",
    "process_in_background",
    "store_in_background",
    "supports_processing_flag",
    "use_dispatcher",
]
