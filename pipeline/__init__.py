from .runner import GenerationFailed, GenerationJobRunner, RunnerConfig, get_runner, load_runner_config

__all__ = [
    "GenerationFailed",
    "GenerationJobRunner",
    "RunnerConfig",
    "get_runner",
    "load_runner_config",
]
