"""EC2 snapshot copy client.

Performs the remote operations behind each replication step:

1. ``start_copy``: copy the source image's root snapshot into the destination
   account/region, encrypted with the workflow key
2. ``check_progress``: report the destination snapshot's state
3. ``register_result``: register an image backed by the copied snapshot

Each operation is a plain synchronous call chain with no retry of its own.
botocore failures are translated with ``classify_provider_error`` so callers
only ever see ``RetryableError`` or ``PermanentError``.

Example:
    client = SnapshotCopyClient(AwsSessionFactory())
    snapshot_id = client.start_copy(request)
    state = client.check_progress(request, snapshot_id)
"""

from typing import Any, Callable, Optional

import structlog

from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.core.exceptions import (
    ImageNotFoundError,
    ProviderError,
    SnapshotNotFoundError,
    classify_provider_error,
)
from ami_replication.models.schemas import ReplicationRequest

logger = structlog.get_logger(__name__)


def _call(operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
    """Invoke a boto3 method, translating provider exceptions."""
    try:
        return fn(**kwargs)
    except Exception as e:
        raise classify_provider_error(e, operation) from e


def root_snapshot_id(image: dict[str, Any]) -> str:
    """
    Find the EBS snapshot behind an image's root device.

    Raises:
        ProviderError: If the image has no EBS-backed root device.
    """
    root_device = image.get("RootDeviceName")
    for mapping in image.get("BlockDeviceMappings", []):
        if mapping.get("DeviceName") == root_device and "Ebs" in mapping:
            snapshot_id = mapping["Ebs"].get("SnapshotId")
            if snapshot_id:
                return snapshot_id
    raise ProviderError(
        "DescribeImages",
        f"Image {image.get('ImageId')} has no EBS root snapshot",
        details={"root_device": root_device},
    )


class SnapshotCopyClient:
    """
    Cross-account snapshot copy operations.

    Args:
        sessions: Factory for source and destination boto3 clients.
    """

    def __init__(self, sessions: Optional[AwsSessionFactory] = None):
        self._sessions = sessions or AwsSessionFactory()

    def _destination_ec2(self, request: ReplicationRequest) -> Any:
        return self._sessions.client_for_role(
            "ec2",
            request.destination_role_arn,
            request.destination_region,
        )

    # =========================================================================
    # Source image
    # =========================================================================

    def describe_source_image(self, region: str, image_id: str) -> dict[str, Any]:
        ec2 = self._sessions.client("ec2", region)
        response = _call("DescribeImages", ec2.describe_images, ImageIds=[image_id])
        images = response.get("Images", [])
        if not images:
            raise ImageNotFoundError("DescribeImages", f"Image {image_id} not found in {region}")
        return images[0]

    def find_latest_image(self, region: str, name: str) -> dict[str, Any]:
        """Most recently created image owned by the caller whose name matches ``name``.

        ``name`` may contain EC2 filter wildcards.
        """
        ec2 = self._sessions.client("ec2", region)
        response = _call(
            "DescribeImages",
            ec2.describe_images,
            Owners=["self"],
            Filters=[{"Name": "name", "Values": [name]}],
        )
        images = response.get("Images", [])
        if not images:
            raise ImageNotFoundError("DescribeImages", f"No image named {name} in {region}")
        return max(images, key=lambda image: image.get("CreationDate", ""))

    def share_snapshot(self, region: str, snapshot_id: str, account_id: str) -> None:
        """Grant a destination account permission to copy a source snapshot."""
        ec2 = self._sessions.client("ec2", region)
        _call(
            "ModifySnapshotAttribute",
            ec2.modify_snapshot_attribute,
            Attribute="createVolumePermission",
            OperationType="add",
            SnapshotId=snapshot_id,
            UserIds=[account_id],
        )
        logger.info("snapshot_shared", snapshot_id=snapshot_id, account_id=account_id)

    # =========================================================================
    # Replication operations
    # =========================================================================

    def start_copy(self, request: ReplicationRequest) -> str:
        """
        Start copying the source image's root snapshot into the destination.

        Returns:
            ID of the new (pending) destination snapshot.
        """
        image = self.describe_source_image(request.source_region, request.source_image_id)
        source_snapshot_id = root_snapshot_id(image)
        key_owner = self._sessions.caller_account_id()
        kms_key_id = (
            f"arn:aws:kms:{request.destination_region}:{key_owner}:{request.encryption_key_alias}"
        )

        ec2 = self._destination_ec2(request)
        response = _call(
            "CopySnapshot",
            ec2.copy_snapshot,
            SourceRegion=request.source_region,
            SourceSnapshotId=source_snapshot_id,
            Encrypted=True,
            KmsKeyId=kms_key_id,
            Description=(
                f"Copy of {source_snapshot_id} ({request.source_image_id}) "
                f"from {key_owner}/{request.source_region}"
            ),
        )
        snapshot_id = response["SnapshotId"]
        logger.info(
            "snapshot_copy_started",
            source_snapshot_id=source_snapshot_id,
            snapshot_id=snapshot_id,
            target=request.target,
        )
        return snapshot_id

    def check_progress(self, request: ReplicationRequest, snapshot_id: str) -> str:
        """
        Read the destination snapshot's state.

        Read-only; repeating it never starts another copy.

        Returns:
            The provider's state string (``pending``, ``completed``, ``error``, ...).
        """
        ec2 = self._destination_ec2(request)
        response = _call("DescribeSnapshots", ec2.describe_snapshots, SnapshotIds=[snapshot_id])
        snapshots = response.get("Snapshots", [])
        if not snapshots:
            raise SnapshotNotFoundError(
                "DescribeSnapshots",
                f"Snapshot {snapshot_id} not found in {request.target}",
            )
        snapshot = snapshots[0]
        logger.debug(
            "snapshot_progress",
            snapshot_id=snapshot_id,
            state=snapshot.get("State"),
            progress=snapshot.get("Progress"),
        )
        return snapshot["State"]

    def register_result(self, request: ReplicationRequest, snapshot_id: str) -> str:
        """
        Register a destination image backed by the copied snapshot.

        Returns the existing image if one is already backed by the snapshot,
        so a repeated registration does not create a duplicate.

        Returns:
            ID of the destination image.
        """
        ec2 = self._destination_ec2(request)
        existing = _call(
            "DescribeImages",
            ec2.describe_images,
            Owners=["self"],
            Filters=[{"Name": "block-device-mapping.snapshot-id", "Values": [snapshot_id]}],
        ).get("Images", [])
        if existing:
            image_id = existing[0]["ImageId"]
            logger.info("image_already_registered", image_id=image_id, snapshot_id=snapshot_id)
            return image_id

        source = self.describe_source_image(request.source_region, request.source_image_id)
        root_device = source.get("RootDeviceName", "/dev/xvda")
        source_ebs: dict[str, Any] = next(
            (
                m["Ebs"]
                for m in source.get("BlockDeviceMappings", [])
                if m.get("DeviceName") == root_device and "Ebs" in m
            ),
            {},
        )
        ebs = {
            "SnapshotId": snapshot_id,
            "DeleteOnTermination": source_ebs.get("DeleteOnTermination", True),
            "VolumeType": source_ebs.get("VolumeType", "gp3"),
        }

        response = _call(
            "RegisterImage",
            ec2.register_image,
            Name=source.get("Name") or request.resource_name,
            Description=f"{request.resource_name} copied from {request.source_image_id}",
            Architecture=source.get("Architecture", "x86_64"),
            RootDeviceName=root_device,
            VirtualizationType=source.get("VirtualizationType", "hvm"),
            EnaSupport=source.get("EnaSupport", True),
            BlockDeviceMappings=[{"DeviceName": root_device, "Ebs": ebs}],
        )
        image_id = response["ImageId"]
        logger.info("image_registered", image_id=image_id, snapshot_id=snapshot_id, target=request.target)
        return image_id
