from .loader import load_workflow
from .runner import execute, run_pipeline
from .model import JobTemplate, PipelineDefinition, Step
# Imported last so the dsl ``matrix`` helper is not shadowed by the
# ``relayci.matrix`` submodule attribute bound when runner imports it.
from .dsl import job, sh, matrix, cache, concurrency, pipeline, wf, JobBuilder, build

__all__ = [
    "job", "sh", "matrix", "cache", "concurrency", "pipeline", "wf", "JobBuilder", "build",
    "load_workflow", "execute", "run_pipeline", "JobTemplate", "PipelineDefinition", "Step",
]
