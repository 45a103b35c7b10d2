"""
fusion-mlmodel quickstart: package a model, inspect the archive, and publish
it to a stand-in Fusion server.

Run directly:

    python examples/quickstart.py

All demos use a temporary directory and clean up after themselves.  No real
Fusion instance is contacted; the upload goes through an in-process mock.
"""

from __future__ import annotations

import json
import pathlib
import tempfile


class ToyTextClassifier:
    """Stand-in for a legacy model that saves itself with ``save(context, path)``."""

    def save(self, context: object, path: str) -> None:
        target = pathlib.Path(path)
        (target / "data").mkdir(parents=True, exist_ok=True)
        (target / "data" / "part-00000").write_bytes(b"\x00" * 2048)
        (target / "metadata").mkdir(exist_ok=True)
        (target / "metadata" / "part-00000").write_text(
            json.dumps({"class": "NaiveBayesModel", "numFeatures": 1000})
        )


METADATA = {
    "featureFields": "title,body",
    "analyzerJson": json.dumps({"analyzers": [{"name": "std", "tokenizer": {"type": "standard"}}]}),
    "numFeatures": "1000",
    "owner": "search-team",
}


# ---------------------------------------------------------------------------
# Demo 1: Package a model into a staging directory and zip
# ---------------------------------------------------------------------------

def demo_package_model(staging_root: pathlib.Path) -> pathlib.Path:
    """Stage, save, describe and archive a toy model without uploading."""
    print("\n=== Demo 1: Package a model ===")

    from fusion_mlmodel.core import ModelPublisher
    from fusion_mlmodel.models import FusionConfig

    publisher = ModelPublisher(FusionConfig(staging_root=staging_root))
    result = publisher.package("toy-nb", ToyTextClassifier(), METADATA, context=None)

    print(f"  Staging dir  : {result.model_dir}")
    print(f"  Archive      : {result.archive_path.name}")
    print(f"  Entries      : {result.entries}")
    print(f"  Upload params: {result.params}")
    return result.archive_path


# ---------------------------------------------------------------------------
# Demo 2: Inspect the archive
# ---------------------------------------------------------------------------

def demo_inspect_archive(archive_path: pathlib.Path) -> None:
    """Read the manifest back out of the zip."""
    print("\n=== Demo 2: Inspect archive ===")

    from fusion_mlmodel.core import list_entries, read_manifest

    manifest = read_manifest(archive_path)
    print(f"  Model id   : {manifest.id}")
    print(f"  Type       : {manifest.model_type}")
    print(f"  Features   : {manifest.feature_fields}")
    print(f"  Vectorizer : {[next(iter(step)) for step in manifest.vectorizer or []]}")
    print(f"  Entries    : {list_entries(archive_path)}")


# ---------------------------------------------------------------------------
# Demo 3: Publish through a mock Fusion
# ---------------------------------------------------------------------------

def demo_publish(staging_root: pathlib.Path) -> None:
    """Run the whole pipeline against an in-process Fusion stand-in."""
    print("\n=== Demo 3: Publish to (mock) Fusion ===")

    import httpx

    from fusion_mlmodel.core import ModelPublisher
    from fusion_mlmodel.models import FusionConfig, FusionCredentials
    from fusion_mlmodel.transport import FusionSession, parse_host

    def fake_fusion(request: httpx.Request) -> httpx.Response:
        print(f"  -> {request.method} {request.url}")
        if request.url.path == "/api/session":
            return httpx.Response(201)
        return httpx.Response(200, json={"id": request.url.path.rsplit("/", 1)[-1]})

    client = httpx.Client(transport=httpx.MockTransport(fake_fusion))
    session = FusionSession(
        parse_host("fusion:8764"),
        FusionCredentials(username="admin", password="password123"),
        client=client,
    )
    with session:
        publisher = ModelPublisher(FusionConfig(staging_root=staging_root), session=session)
        result = publisher.publish("toy-nb", ToyTextClassifier(), METADATA)
    client.close()
    print(f"  Status       : {result.status_code}")

    backups = sorted(p.name for p in staging_root.iterdir() if "-bak-" in p.name)
    print(f"  Backups kept : {backups}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("fusion-mlmodel quickstart demo")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as tmp:
        staging_root = pathlib.Path(tmp)
        archive_path = demo_package_model(staging_root)
        demo_inspect_archive(archive_path)
        # Publishing the same id again backs up the first staging directory
        demo_publish(staging_root)

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
