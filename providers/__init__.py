from .base import GenerationResponse, JobResult, JobStatus, MediaProvider
from .vertex import VertexAdapter, VertexConfig, get_provider, load_vertex_config

__all__ = [
    "GenerationResponse",
    "JobResult",
    "JobStatus",
    "MediaProvider",
    "VertexAdapter",
    "VertexConfig",
    "get_provider",
    "load_vertex_config",
]
