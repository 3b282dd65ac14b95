"""Resource resolution: copying binaries and resources into a staging tree."""

import errno
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .archive import ensure_within
from .errors import PermissionDenied, ResourceMissing
from .spec import BundleSpecification, ResourceSpec, TargetFormat

EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


@dataclass(frozen=True)
class StageLayout:
    """Where a target format wants each kind of input.

    All directories are relative to the staging root.

    Attributes:
        binary_dir: Directory receiving the executables
        resource_dir: Directory receiving the resources
        files_dir: Base directory of the per-platform ``files`` map
        frameworks_dir: Directory receiving macOS frameworks, if any
        force_executable: Set the executable bits on staged binaries
    """

    binary_dir: PurePosixPath
    resource_dir: PurePosixPath
    files_dir: PurePosixPath = PurePosixPath(".")
    frameworks_dir: PurePosixPath | None = None
    force_executable: bool = True


@dataclass
class StagedFiles:
    """What a staging pass produced, as absolute paths."""

    binaries: list[Path] = field(default_factory=list)
    resources: list[Path] = field(default_factory=list)

    @property
    def main_binary(self) -> Path:
        return self.binaries[0]


def copy_entry(source: Path, destination: Path) -> None:
    """Copy a file, directory or symbolic link.

    Symbolic links are re-created with the same target, never followed.
    Permission bits are preserved.

    Raises:
        ResourceMissing: If the source cannot be found
        PermissionDenied: If the source cannot be read or the destination
            cannot be written
    """
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if source.is_symlink():
            if destination.is_symlink() or destination.exists():
                destination.unlink()
            os.symlink(os.readlink(source), destination)
        elif source.is_dir():
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        elif source.exists():
            shutil.copy2(source, destination)
        else:
            raise ResourceMissing(f"Resource does not exist: {source}")
    except PermissionError as e:
        raise PermissionDenied(f"Cannot copy {source} to {destination}: {e}") from e
    except FileNotFoundError as e:
        raise ResourceMissing(f"Resource disappeared while copying: {source}") from e
    except shutil.Error as e:
        raise PermissionDenied(f"Cannot copy {source} to {destination}: {e}") from e
    except OSError as e:
        if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            raise PermissionDenied(
                f"Cannot copy {source} to {destination}: {e}"
            ) from e
        raise


class ResourceResolver:
    """Copy a specification's inputs into the layout of one target.

    Args:
        spec: The validated bundle specification
        target: The target format being staged

    Example:
        resolver = ResourceResolver(spec, TargetFormat.DEB)
        staged = resolver.stage(root, StageLayout(
            PurePosixPath("usr/bin"), PurePosixPath("usr/lib/demo")))
    """

    def __init__(self, spec: BundleSpecification, target: TargetFormat):
        self.spec = spec
        self.target = target
        self.settings = spec.settings_for(target)
        self.log = logging.getLogger(self.__class__.__name__)

    def _destination(self, root: Path, directory: PurePosixPath, rel: PurePosixPath) -> Path:
        destination = root / directory / rel
        ensure_within(root, destination)
        return destination

    def stage_binaries(self, root: Path, layout: StageLayout) -> list[Path]:
        """Copy the target's binaries; the main binary comes first."""
        staged = []
        for binary in self.spec.binaries_for(self.target):
            destination = self._destination(
                root, layout.binary_dir, PurePosixPath(binary.name)
            )
            copy_entry(binary.path, destination)
            if layout.force_executable:
                mode = destination.stat().st_mode
                destination.chmod(mode | EXECUTABLE_BITS)
            self.log.debug("staged binary %s -> %s", binary.path, destination)
            staged.append(destination)
        if not staged:
            raise ResourceMissing(
                f"No binary available for target '{self.target.value}'"
            )
        return staged

    def stage_resources(
        self, root: Path, resources: tuple[ResourceSpec, ...], directory: PurePosixPath
    ) -> list[Path]:
        staged = []
        for resource in resources:
            destination = self._destination(root, directory, resource.target)
            copy_entry(resource.source, destination)
            self.log.debug("staged resource %s -> %s", resource.source, destination)
            staged.append(destination)
        return staged

    def stage(self, root: Path, layout: StageLayout) -> StagedFiles:
        """Populate a staging root for the target.

        Returns:
            The staged binaries (main first) and resources
        """
        root = Path(root)
        staged = StagedFiles()
        staged.binaries = self.stage_binaries(root, layout)
        staged.resources = self.stage_resources(
            root, self.spec.resources, layout.resource_dir
        )
        staged.resources += self.stage_resources(
            root, self.settings.files, layout.files_dir
        )
        if layout.frameworks_dir is not None:
            for framework in self.settings.frameworks:
                destination = self._destination(
                    root, layout.frameworks_dir, PurePosixPath(framework.name)
                )
                copy_entry(framework, destination)
                staged.resources.append(destination)
        self.log.info(
            "staged %d binaries and %d resources for %s",
            len(staged.binaries),
            len(staged.resources),
            self.target.value,
        )
        return staged
