"""Pre-flight artifact validation.

Checks everything that can be checked before a single byte is shipped:
required settings, the build directory and its files, and the package
version. Any problem raises ValidationError.
"""

import json
import logging
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from .exceptions import ErrorCode, ValidationError
from .models import Version

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_FILES = ("main.js", "renderer.js", "index.html", "package.json")


@runtime_checkable
class ArtifactValidator(Protocol):
    """Turns a build directory into the version to deploy."""

    def validate(self, build_dir: Union[str, Path]) -> Version:
        ...


class BuildArtifactValidator:
    """Validates a build directory and reads its version.

    Args:
        required_files: Files that must exist and be non-empty.
        required_settings: Setting name -> value; every value must be set.
        package_file: Path of the package manifest; defaults to
            ``<build_dir>/package.json``.
    """

    def __init__(
        self,
        required_files: Sequence[str] = DEFAULT_REQUIRED_FILES,
        required_settings: Optional[Mapping[str, Optional[str]]] = None,
        package_file: Optional[Union[str, Path]] = None,
    ):
        self.required_files = tuple(required_files)
        self.required_settings = dict(required_settings or {})
        self.package_file = Path(package_file) if package_file else None

    def validate(self, build_dir: Union[str, Path]) -> Version:
        logger.info("Validating production environment")
        self.check_settings()

        build_path = Path(build_dir)
        if not build_path.is_dir():
            raise ValidationError(
                f"Build directory not found: {build_path}", field="build_dir"
            )
        logger.info("Running pre-production checks on %s", build_path)
        for name in self.required_files:
            file_path = build_path / name
            if not file_path.is_file():
                raise ValidationError(
                    f"Required build file missing: {name}", field=name
                )
            if file_path.stat().st_size == 0:
                raise ValidationError(f"Build file is empty: {name}", field=name)

        version = self._read_version(self.package_file or build_path / "package.json")
        logger.info("Pre-production checks passed for version %s", version)
        return version

    def check_settings(self) -> None:
        """Raise ValidationError naming every required setting that is unset."""
        missing = [name for name, value in self.required_settings.items() if not value]
        if missing:
            raise ValidationError(
                f"Required setting missing: {', '.join(missing)}",
                error_code=ErrorCode.MISSING_REQUIRED_SETTING,
                details=[{"field": name, "issue": "not set"} for name in missing],
            )

    @staticmethod
    def _read_version(package_file: Path) -> Version:
        try:
            with open(package_file) as f:
                manifest = json.load(f)
        except FileNotFoundError as exc:
            raise ValidationError(
                f"Package manifest not found: {package_file}", field="package.json"
            ) from exc
        except (json.JSONDecodeError, OSError) as exc:
            raise ValidationError(
                f"Unreadable package manifest {package_file}: {exc}",
                field="package.json",
            ) from exc

        raw = manifest.get("version") if isinstance(manifest, dict) else None
        if not raw:
            raise ValidationError("Package version not found", field="version")
        return Version.parse(raw)
