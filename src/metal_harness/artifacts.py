"""Local build metadata and artifact lookup.

A build directory holds the artifacts plus a `meta.json` describing them:

    {
      "ostree-version": "41.20250101.dev.0",
      "buildartifacts": {
        "live-kernel": {"path": "fedora-coreos-...-live-kernel-x86_64", "sha256": "..."},
        "metal": {"path": "fedora-coreos-...-metal.x86_64.raw", "sha256": "..."}
      }
    }
"""

from pathlib import Path

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field

from metal_harness.exceptions import MissingArtifactError
from metal_harness.models import KernelSetup

META_FILENAME = "meta.json"


class Artifact(BaseModel):
    """One build artifact, path relative to the build directory."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    path: str
    sha256: str = ""


class BuildMeta(BaseModel):
    """The subset of build metadata the harness consumes."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    ostree_version: str = Field(default="", alias="ostree-version")
    build_artifacts: dict[str, Artifact] = Field(default_factory=dict, alias="buildartifacts")

    def get_artifact(self, name: str) -> Artifact:
        try:
            return self.build_artifacts[name]
        except KeyError:
            raise MissingArtifactError(
                f"Missing artifact {name} for {self.ostree_version} build",
                artifact=name,
            ) from None


class LocalBuild:
    """A build directory on local disk."""

    def __init__(self, build_dir: Path, meta: BuildMeta):
        self.dir = build_dir
        self.meta = meta

    @classmethod
    async def load(cls, build_dir: Path) -> "LocalBuild":
        """Read `meta.json` from a build directory."""
        async with aiofiles.open(build_dir / META_FILENAME) as f:
            meta = BuildMeta.model_validate_json(await f.read())
        return cls(build_dir, meta)

    def artifact_path(self, name: str) -> str:
        """Path of an artifact relative to the build directory."""
        return self.meta.get_artifact(name).path

    def metal_artifact(self, native_4k: bool) -> str:
        return "metal4k" if native_4k else "metal"

    def kernel_setup(self) -> KernelSetup:
        return KernelSetup(
            kernel=self.artifact_path("live-kernel"),
            initramfs=self.artifact_path("live-initramfs"),
            rootfs=self.artifact_path("live-rootfs"),
        )

    async def check_artifacts_exist(self, names: list[str]) -> None:
        """Verify that every named artifact was built and is present locally.

        Raises:
            MissingArtifactError: Not in metadata, or the file is missing
        """
        version = self.meta.ostree_version
        for name in names:
            artifact = self.meta.get_artifact(name)
            if not await aiofiles.os.path.exists(self.dir / artifact.path):
                raise MissingArtifactError(
                    f"Missing local file for artifact {name} for build {version}",
                    artifact=name,
                    context={"path": str(self.dir / artifact.path)},
                )
