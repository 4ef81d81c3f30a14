from __future__ import annotations

from .models import BuildStage


class BuildError(RuntimeError):
    stage: BuildStage | None = None

    def __init__(self, slave_name: str, detail: str) -> None:
        super().__init__(f"[{slave_name}] {detail}")
        self.slave_name = slave_name
        self.detail = detail


class UnreachableSlave(BuildError):
    pass


class MissingLocalScript(BuildError):
    stage = BuildStage.VALIDATE_SCRIPT


class WorkspacePrepFailed(BuildError):
    stage = BuildStage.PREPARE_WORKSPACE


class UploadFailed(BuildError):
    stage = BuildStage.UPLOAD_SCRIPT


class RemoteBuildFailed(BuildError):
    stage = BuildStage.EXECUTE_BUILD


class ArtifactRetrievalFailed(BuildError):
    stage = BuildStage.RETRIEVE_ARTIFACTS


class CleanupFailed(BuildError):
    stage = BuildStage.CLEANUP


STAGE_ERRORS: dict[BuildStage, type[BuildError]] = {
    BuildStage.VALIDATE_SCRIPT: MissingLocalScript,
    BuildStage.PREPARE_WORKSPACE: WorkspacePrepFailed,
    BuildStage.UPLOAD_SCRIPT: UploadFailed,
    BuildStage.EXECUTE_BUILD: RemoteBuildFailed,
    BuildStage.RETRIEVE_ARTIFACTS: ArtifactRetrievalFailed,
    BuildStage.CLEANUP: CleanupFailed,
}
