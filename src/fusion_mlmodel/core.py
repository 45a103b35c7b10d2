"""Core logic for fusion-mlmodel."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import IO, Any, Callable, Mapping

from pydantic import ValidationError

from .errors import (
    ArchiveError,
    InvalidModelIdError,
    ManifestError,
    StagingError,
    UnsupportedModelError,
)
from .models import (
    SPARK_ML,
    SPARK_MLLIB,
    FusionConfig,
    Manifest,
    ManifestResult,
    PersistenceBinding,
    PublishResult,
)
from .transport import BlobUploader, FusionSession, parse_host

__all__ = [
    "DirectoryStager",
    "ManifestBuilder",
    "ModelPublisher",
    "archive_directory",
    "extract_archive",
    "list_entries",
    "read_manifest",
    "resolve_persistence",
    "save_model_in_fusion",
    "validate_model_id",
]

logger = logging.getLogger(__name__)

_MODEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_BACKUP_TIMESTAMP_FORMAT = "%y%m%d%H%M%S"
_COPY_CHUNK_SIZE = 65536

# Metadata keys folded into the manifest
_MODEL_CLASS_NAME_KEY = "modelClassName"
_FEATURE_FIELDS_KEY = "featureFields"
_ANALYZER_JSON_KEY = "analyzerJson"
_NUM_FEATURES_KEY = "numFeatures"
_MODEL_TYPE_KEY = "modelType"
_MODEL_SPEC_KEY = "modelSpec"


def validate_model_id(model_id: str) -> str:
    """Return *model_id* if it is safe as a directory name and URL segment."""
    if not model_id or not _MODEL_ID_PATTERN.match(model_id) or ".." in model_id:
        raise InvalidModelIdError(
            f"Invalid model id {model_id!r}: use letters, digits, '.', '_' or '-', "
            "starting with a letter or digit."
        )
    return model_id


def _class_name(obj: Any) -> str:
    cls = type(obj)
    return f"{cls.__module__}.{cls.__qualname__}"


def resolve_persistence(model: Any, context: Any = None) -> PersistenceBinding:
    """
    Work out how *model* saves itself to a directory.

    Models exposing ``write()`` are saved with
    ``model.write().overwrite().save(path)`` and tagged ``spark-ml``; models
    with only ``save(context, path)`` are tagged ``spark-mllib``.  ``write()``
    is checked first because writable models also carry a ``save(path)``
    shortcut.
    """
    if callable(getattr(model, "write", None)):

        def save_writable(path: Path) -> None:
            model.write().overwrite().save(str(path))

        return PersistenceBinding(SPARK_ML, save_writable)

    if callable(getattr(model, "save", None)):

        def save_saveable(path: Path) -> None:
            model.save(context, str(path))

        return PersistenceBinding(SPARK_MLLIB, save_saveable)

    raise UnsupportedModelError(
        f"Provided ML model of type {_class_name(model)} supports neither "
        "save(context, path) nor write().overwrite().save(path)."
    )


class DirectoryStager:
    """
    Hands out empty per-model directories under *root*.

    An existing directory is renamed to ``<model_id>-bak-<yyMMddHHmmss>``
    instead of being reused, so earlier saves stay on disk.
    """

    def __init__(self, root: Path | str = ".", clock: Callable[[], datetime] = datetime.now):
        self.root = Path(root)
        self._clock = clock

    def prepare(self, model_id: str) -> Path:
        model_dir = self.root / model_id
        if model_dir.is_dir():
            backup = self._backup_path(model_id)
            try:
                model_dir.rename(backup)
            except OSError as exc:
                raise StagingError(
                    f"Could not move existing {model_dir} aside to {backup}: {exc}"
                ) from exc
            logger.info("Backed up existing model directory to %s", backup)

        try:
            model_dir.mkdir(parents=True)
        except OSError as exc:
            raise StagingError(f"Could not create model directory {model_dir}: {exc}") from exc
        logger.info("Staged model directory %s", model_dir)
        return model_dir

    def _backup_path(self, model_id: str) -> Path:
        stamp = self._clock().strftime(_BACKUP_TIMESTAMP_FORMAT)
        backup = self.root / f"{model_id}-bak-{stamp}"
        suffix = 0
        while backup.exists():
            suffix += 1
            backup = self.root / f"{model_id}-bak-{stamp}-{suffix}"
        return backup


def _split_feature_fields(value: str) -> list[str]:
    return value.split(",")


def _close_quietly(fh: IO[str]) -> None:
    with contextlib.suppress(OSError, ValueError):
        fh.flush()
    with contextlib.suppress(OSError, ValueError):
        fh.close()


class ManifestBuilder:
    """Turns flat model metadata into a :class:`Manifest`."""

    def build(
        self,
        model_id: str,
        model_type: str,
        model_class_name: str,
        metadata: Mapping[str, str],
    ) -> ManifestResult:
        """
        Build the manifest for a saved model.

        The caller's *metadata* is left alone; the returned
        ``ManifestResult.params`` holds the keys that were not folded into
        the manifest, plus ``modelSpec`` naming the manifest file.

        Raises:
            ManifestError: ``analyzerJson`` missing or not a JSON object for
                a ``spark-mllib`` model
        """
        params = dict(metadata)
        params.pop(_MODEL_CLASS_NAME_KEY, None)

        feature_fields = None
        if _FEATURE_FIELDS_KEY in params:
            feature_fields = _split_feature_fields(params.pop(_FEATURE_FIELDS_KEY))

        vectorizer = None
        if model_type == SPARK_MLLIB:
            analyzer = self._parse_analyzer(params.pop(_ANALYZER_JSON_KEY, None))
            num_features = params.pop(_NUM_FEATURES_KEY, None)
            vectorizer = [
                {"lucene-analyzer": analyzer},
                {"hashingTF": {"numFeatures": num_features}},
            ]

        manifest = Manifest(
            id=model_id,
            model_type=model_type,
            model_class_name=model_class_name,
            feature_fields=feature_fields,
            vectorizer=vectorizer,
        )
        params[_MODEL_SPEC_KEY] = manifest.filename
        return ManifestResult(manifest=manifest, params=params)

    def write(self, manifest: Manifest, directory: Path) -> Path:
        """Write *manifest* as ``<modelType>.json`` into *directory*."""
        path = Path(directory) / manifest.filename
        try:
            fh = open(path, "w", encoding="utf-8")
        except OSError as exc:
            raise StagingError(f"Could not open manifest file {path}: {exc}") from exc
        try:
            fh.write(manifest.to_json())
        except OSError as exc:
            raise StagingError(f"Could not write manifest file {path}: {exc}") from exc
        finally:
            _close_quietly(fh)
        logger.info("Wrote %s manifest to %s", manifest.model_type, path)
        return path

    @staticmethod
    def _parse_analyzer(raw: str | None) -> dict[str, Any]:
        if raw is None:
            raise ManifestError(
                f"Metadata key {_ANALYZER_JSON_KEY!r} is required for {SPARK_MLLIB} models."
            )
        try:
            analyzer = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"{_ANALYZER_JSON_KEY} is not valid JSON: {exc}") from exc
        if not isinstance(analyzer, dict):
            raise ManifestError(
                f"{_ANALYZER_JSON_KEY} must be a JSON object, got {type(analyzer).__name__}."
            )
        return analyzer


# ------------------------------------------------------------------
# Archives
# ------------------------------------------------------------------


def archive_directory(source: Path | str, destination: Path | str) -> list[str]:
    """
    Zip every file under *source* into *destination*.

    Entry names are paths relative to the resolved *source*, always with
    ``/`` separators, written in directory-walk order.  A stale
    *destination* file is removed first.  Returns the entry names.
    """
    root = Path(source).resolve()
    if not root.is_dir():
        raise ArchiveError(f"{str(source)!r} is not a directory.")
    dest = Path(destination)

    entries: list[str] = []
    try:
        if dest.is_file():
            dest.unlink()
        with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for dirpath, _dirnames, filenames in os.walk(root):
                for name in filenames:
                    file_path = Path(dirpath) / name
                    if not file_path.is_file() or file_path == dest.resolve():
                        continue
                    arcname = file_path.relative_to(root).as_posix()
                    info = zipfile.ZipInfo.from_file(
                        file_path, arcname, strict_timestamps=False
                    )
                    info.compress_type = zipfile.ZIP_DEFLATED
                    with open(file_path, "rb") as src, archive.open(info, "w") as dst:
                        shutil.copyfileobj(src, dst, _COPY_CHUNK_SIZE)
                    entries.append(arcname)
                    logger.debug("Archived %s", arcname)
    except (OSError, ValueError, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"Failed to archive {root} into {dest}: {exc}") from exc

    logger.info("Archived %d files from %s into %s", len(entries), root, dest)
    return entries


def list_entries(archive_path: Path | str) -> list[str]:
    """Return the entry names of a model archive, in archive order."""
    try:
        with zipfile.ZipFile(archive_path, "r") as archive:
            return archive.namelist()
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"Could not read archive {archive_path}: {exc}") from exc


def read_manifest(archive_path: Path | str) -> Manifest:
    """
    Read the manifest stored at the root of a model archive.

    The manifest is the top-level ``<modelType>.json`` entry whose
    ``modelType`` matches its own filename.
    """
    try:
        with zipfile.ZipFile(archive_path, "r") as archive:
            for name in archive.namelist():
                if "/" in name or not name.endswith(".json"):
                    continue
                try:
                    manifest = Manifest.model_validate_json(archive.read(name))
                except ValidationError:
                    continue
                if manifest.filename == name:
                    return manifest
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"Could not read archive {archive_path}: {exc}") from exc
    raise ArchiveError(f"No model manifest found in {archive_path}.")


def extract_archive(archive_path: Path | str, output_dir: Path | str) -> list[Path]:
    """Extract a model archive into *output_dir*, refusing escaping entries."""
    output = Path(output_dir)
    extracted: list[Path] = []
    try:
        output.mkdir(parents=True, exist_ok=True)
        root = output.resolve()
        with zipfile.ZipFile(archive_path, "r") as archive:
            for name in archive.namelist():
                rel = PurePosixPath(name)
                if rel.is_absolute() or ".." in rel.parts:
                    raise ArchiveError(f"Refusing to extract unsafe entry {name!r}.")
                target = root.joinpath(*rel.parts)
                if name.endswith("/"):
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(name, "r") as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst, _COPY_CHUNK_SIZE)
                extracted.append(target)
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"Could not extract {archive_path} into {output}: {exc}") from exc
    return extracted


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------


class ModelPublisher:
    """
    Saves a model, describes it, zips it and uploads it to Fusion.

    Every stage fails fast; files already written (staging directory,
    archive) are left in place for inspection.  Saves for the same model id
    must not run concurrently.
    """

    def __init__(
        self,
        config: FusionConfig | None = None,
        session: FusionSession | None = None,
        stager: DirectoryStager | None = None,
        manifest_builder: ManifestBuilder | None = None,
    ):
        self.config = config or FusionConfig()
        self.session = session
        self.stager = stager or DirectoryStager(self.config.staging_root)
        self.manifest_builder = manifest_builder or ManifestBuilder()

    def package(
        self,
        model_id: str,
        model: Any,
        metadata: Mapping[str, str] | None = None,
        context: Any = None,
    ) -> PublishResult:
        """Stage, save, describe and archive *model* without uploading it."""
        validate_model_id(model_id)
        binding = resolve_persistence(model, context)

        params = dict(metadata or {})
        model_type = params.get(_MODEL_TYPE_KEY) or binding.model_type
        params[_MODEL_TYPE_KEY] = model_type

        model_dir = self.stager.prepare(model_id)
        try:
            binding.save(model_dir)
        except OSError as exc:
            raise StagingError(f"Saving model {model_id} into {model_dir} failed: {exc}") from exc

        result = self.manifest_builder.build(model_id, model_type, _class_name(model), params)
        self.manifest_builder.write(result.manifest, model_dir)

        archive_path = self.stager.root / f"{model_id}.zip"
        entries = archive_directory(model_dir, archive_path)

        return PublishResult(
            model_id=model_id,
            model_dir=model_dir,
            archive_path=archive_path,
            manifest=result.manifest,
            params=result.params,
            entries=entries,
        )

    def publish(
        self,
        model_id: str,
        model: Any,
        metadata: Mapping[str, str] | None = None,
        context: Any = None,
    ) -> PublishResult:
        """Package *model* and PUT the archive into the Fusion blob store."""
        result = self.package(model_id, model, metadata, context)

        if self.session is not None:
            response = BlobUploader(self.session).upload(
                model_id, result.archive_path, result.params
            )
        else:
            with FusionSession(
                parse_host(self.config.host),
                self.config.credentials,
                timeout_s=self.config.timeout_s,
                max_auth_retries=self.config.max_auth_retries,
            ) as session:
                response = BlobUploader(session).upload(
                    model_id, result.archive_path, result.params
                )

        result.status_code = response.status_code
        return result


def save_model_in_fusion(
    host: str,
    username: str | None,
    password: str | None,
    realm: str,
    context: Any,
    model_id: str,
    model: Any,
    metadata: Mapping[str, str] | None = None,
    staging_root: Path | str = ".",
) -> PublishResult:
    """Save *model* locally and publish it to the Fusion at *host*."""
    config = FusionConfig(
        host=host,
        username=username,
        password=password,
        realm=realm,
        staging_root=Path(staging_root),
    )
    return ModelPublisher(config).publish(model_id, model, metadata, context)
