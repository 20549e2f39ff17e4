"""Training Camp - feedback-driven agent evolution core library."""

__all__ = ["EvolutionPipeline", "TrainingCampConfig", "build_pipeline", "open_pipeline"]
__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy imports - keep ``import training_camp`` free of aiosqlite and pydantic setup."""
    if name == "TrainingCampConfig":
        from training_camp.config import TrainingCampConfig

        return TrainingCampConfig
    if name == "EvolutionPipeline":
        from training_camp.evolution.pipeline import EvolutionPipeline

        return EvolutionPipeline
    if name == "build_pipeline":
        from training_camp.evolution.pipeline import build_pipeline

        return build_pipeline
    if name == "open_pipeline":
        from training_camp.evolution.pipeline import open_pipeline

        return open_pipeline
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
