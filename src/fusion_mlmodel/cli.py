"""CLI entry point for fusion-mlmodel."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from .core import (
    ManifestBuilder,
    archive_directory,
    extract_archive,
    list_entries,
    read_manifest,
    validate_model_id,
)
from .errors import FusionModelError
from .models import DEFAULT_FUSION_PORT, FusionCredentials
from .transport import BlobUploader, FusionSession, parse_host


def _parse_params(pairs: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--param")
        params[key] = value
    return params


@click.group()
@click.version_option(package_name="fusion-mlmodel")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Package ML models and publish them to the Fusion blob store."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("pack")
@click.option(
    "--model-dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory holding the saved model files.",
)
@click.option("--model-id", required=True, help="Model id (blob name in Fusion).")
@click.option(
    "--model-type",
    default="spark-ml",
    show_default=True,
    help="Model type tag (e.g. spark-ml, spark-mllib).",
)
@click.option(
    "--model-class",
    "model_class_name",
    required=True,
    help="Fully qualified class name of the saved model.",
)
@click.option(
    "--metadata",
    "metadata_json",
    default="{}",
    help="Model metadata as a JSON object of strings.",
)
def pack_command(
    model_dir: str,
    model_id: str,
    model_type: str,
    model_class_name: str,
    metadata_json: str,
) -> None:
    """Write the manifest into a saved model directory and zip it."""
    try:
        metadata = json.loads(metadata_json)
    except json.JSONDecodeError as exc:
        click.echo(f"Error: invalid JSON for --metadata: {exc}", err=True)
        sys.exit(1)
    if not isinstance(metadata, dict):
        click.echo("Error: --metadata must be a JSON object.", err=True)
        sys.exit(1)

    model_path = Path(model_dir)
    archive_path = model_path.resolve().parent / f"{model_id}.zip"
    builder = ManifestBuilder()
    try:
        validate_model_id(model_id)
        result = builder.build(
            model_id,
            model_type,
            model_class_name,
            {str(k): str(v) for k, v in metadata.items()},
        )
        builder.write(result.manifest, model_path)
        entries = archive_directory(model_path, archive_path)
    except (FusionModelError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Packaged model: {archive_path}")
    click.echo(f"  Model id    : {model_id}")
    click.echo(f"  Model type  : {model_type}")
    click.echo(f"  Entries     : {len(entries)}")
    click.echo(f"  Params      : {json.dumps(result.params)}")
    click.echo(f"  Archive     : {archive_path}")


@main.command("upload")
@click.option(
    "--archive",
    "archive_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to the model zip archive.",
)
@click.option("--model-id", required=True, help="Model id (blob name in Fusion).")
@click.option(
    "--host",
    envvar="FUSION_HOST",
    default=f"localhost:{DEFAULT_FUSION_PORT}",
    show_default=True,
    help="Fusion host[:port].",
)
@click.option("--user", envvar="FUSION_USER", default=None, help="Fusion user.")
@click.option("--password", envvar="FUSION_PASSWORD", default=None, help="Fusion password.")
@click.option("--realm", envvar="FUSION_REALM", default="native", show_default=True)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Upload parameter as key=value; repeatable.",
)
def upload_command(
    archive_path: str,
    model_id: str,
    host: str,
    user: str | None,
    password: str | None,
    realm: str,
    params: tuple[str, ...],
) -> None:
    """Upload an existing model archive to the Fusion blob store."""
    query = _parse_params(params)
    credentials = (
        FusionCredentials(username=user, password=password or "", realm=realm)
        if user
        else None
    )
    try:
        validate_model_id(model_id)
        endpoint = parse_host(host)
        with FusionSession(endpoint, credentials) as session:
            response = BlobUploader(session).upload(model_id, Path(archive_path), query)
    except FusionModelError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Uploaded {archive_path} as {model_id} (status {response.status_code})")


@main.command("inspect")
@click.option(
    "--archive",
    "archive_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to the model zip archive.",
)
def inspect_command(archive_path: str) -> None:
    """Show the manifest and entries of a model archive."""
    try:
        entries = list_entries(archive_path)
        manifest = read_manifest(archive_path)
    except FusionModelError as exc:
        click.echo(f"Error inspecting archive: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Model id : {manifest.id}")
    click.echo(f"Type     : {manifest.model_type}")
    click.echo(f"Class    : {manifest.model_class_name}")
    if manifest.feature_fields:
        click.echo(f"Features : {', '.join(manifest.feature_fields)}")
    if manifest.vectorizer:
        steps = [next(iter(step), "?") for step in manifest.vectorizer]
        click.echo(f"Vectorizer: {' -> '.join(steps)}")
    click.echo(f"\nEntries ({len(entries)}):")
    for name in entries:
        click.echo(f"  {name}")


@main.command("unpack")
@click.option(
    "--archive",
    "archive_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to the model zip archive.",
)
@click.option(
    "--output",
    "output_dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory to unpack into.",
)
def unpack_command(archive_path: str, output_dir: str) -> None:
    """Unpack a model archive."""
    try:
        files = extract_archive(archive_path, output_dir)
    except FusionModelError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Unpacked {len(files)} files to: {output_dir}")


if __name__ == "__main__":
    main()
