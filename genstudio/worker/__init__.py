from .api_client import RemoteApiClient
from .coordinator import LifecycleCoordinator, build_coordinator
from .downloader import ArtifactDownloader
from .inflight import InFlightRegistry
from .poller import TaskPoller
from .record_store import GenerationStore
from .status_map import StatusVocabulary

__all__ = [
    "ArtifactDownloader",
    "GenerationStore",
    "InFlightRegistry",
    "LifecycleCoordinator",
    "RemoteApiClient",
    "StatusVocabulary",
    "TaskPoller",
    "build_coordinator",
]
