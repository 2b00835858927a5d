from .dsl import job, sh, uses, upload, download, matrix, need, wf
from .controller import PipelineController, RunReport, RunStatus
from .model import JobSpec, PipelineDefinition, Step, TriggerContext

__all__ = [
    "job", "sh", "uses", "upload", "download", "matrix", "need", "wf",
    "PipelineController", "RunReport", "RunStatus",
    "JobSpec", "PipelineDefinition", "Step", "TriggerContext",
]
