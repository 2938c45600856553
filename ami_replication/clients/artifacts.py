"""Pipeline input artifacts.

A copy action receives the Test stage's output artifact: a zip in the
pipeline's artifact bucket, readable with the temporary credentials the
pipeline attaches to the job. The archive carries a JSON manifest naming
the image that passed the tests. Two manifest shapes are understood:

- a flat document, ``{"imageId": "ami-..."}`` (the field name is configurable)
- a Packer manifest, whose last build lists ``region:ami-id`` pairs in
  ``artifact_id``
"""

import io
import json
import zipfile
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.core.exceptions import SourceArtifactError, classify_provider_error

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SourceArtifact:
    """Location of one job input artifact and the credentials to read it."""

    name: str
    bucket: str
    key: str
    credentials: dict[str, str]

    @classmethod
    def from_job_data(cls, data: dict[str, Any], name: Optional[str] = None) -> Optional["SourceArtifact"]:
        """
        Pick the input artifact of a pipeline job.

        Selects the artifact called ``name``; a job with a single input
        artifact uses it whatever its name.

        Returns:
            None when the job carries no input artifacts.

        Raises:
            SourceArtifactError: If several artifacts are present and none is ``name``.
        """
        artifacts = data.get("inputArtifacts") or []
        if not artifacts:
            return None

        matches = [a for a in artifacts if a.get("name") == name]
        if not matches and len(artifacts) == 1:
            matches = artifacts
        if not matches:
            raise SourceArtifactError(
                f"No input artifact named {name}",
                {"artifacts": [a.get("name") for a in artifacts]},
            )

        artifact = matches[0]
        location = artifact["location"]["s3Location"]
        credentials = data.get("artifactCredentials") or {}
        return cls(
            name=artifact.get("name", ""),
            bucket=location["bucketName"],
            key=location["objectKey"],
            credentials={
                "aws_access_key_id": credentials.get("accessKeyId"),
                "aws_secret_access_key": credentials.get("secretAccessKey"),
                "aws_session_token": credentials.get("sessionToken"),
            },
        )


def image_id_from_manifest(document: dict[str, Any], field: str, region: str) -> str:
    """Extract the tested image id for ``region`` from a manifest document."""
    if document.get(field):
        return str(document[field])

    builds = document.get("builds") or []
    if builds:
        pairs = [p.split(":", 1) for p in str(builds[-1].get("artifact_id", "")).split(",") if ":" in p]
        by_region = {r.strip(): image_id.strip() for r, image_id in pairs}
        if region in by_region:
            return by_region[region]
        raise SourceArtifactError(
            f"Manifest has no image for region {region}",
            {"regions": sorted(by_region)},
        )

    raise SourceArtifactError(f"Manifest has neither {field} nor builds")


class PipelineArtifactReader:
    """
    Reads the tested image id out of a job's input artifact.

    Args:
        sessions: Factory used to build the S3 client.
        manifest_name: File name of the manifest inside the archive.
        image_field: Manifest field holding the image id.
    """

    def __init__(
        self,
        sessions: Optional[AwsSessionFactory] = None,
        manifest_name: str = "manifest.json",
        image_field: str = "imageId",
    ):
        self._sessions = sessions or AwsSessionFactory()
        self.manifest_name = manifest_name
        self.image_field = image_field

    def _download(self, artifact: SourceArtifact, region: str) -> bytes:
        s3 = self._sessions.client_with_credentials("s3", region, artifact.credentials)
        try:
            return s3.get_object(Bucket=artifact.bucket, Key=artifact.key)["Body"].read()
        except Exception as e:
            raise classify_provider_error(e, "GetObject") from e

    def image_id(self, artifact: SourceArtifact, region: str) -> str:
        """Download the artifact and return the image id its manifest names for ``region``."""
        payload = self._download(artifact, region)
        try:
            with zipfile.ZipFile(io.BytesIO(payload)) as archive:
                names = [n for n in archive.namelist() if n.rsplit("/", 1)[-1] == self.manifest_name]
                if not names:
                    raise SourceArtifactError(
                        f"Artifact {artifact.name} has no {self.manifest_name}",
                        {"bucket": artifact.bucket, "key": artifact.key},
                    )
                document = json.loads(archive.read(names[0]))
        except (zipfile.BadZipFile, json.JSONDecodeError) as e:
            raise SourceArtifactError(
                f"Artifact {artifact.name} is unreadable: {e}",
                {"bucket": artifact.bucket, "key": artifact.key},
            ) from e

        image_id = image_id_from_manifest(document, self.image_field, region)
        logger.info("source_artifact_resolved", artifact=artifact.name, image_id=image_id)
        return image_id
