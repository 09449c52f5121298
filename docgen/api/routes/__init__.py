from . import generate, health, jobs, worker

__all__ = ["generate", "health", "jobs", "worker"]
