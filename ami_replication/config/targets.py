"""
Replication targets and the pipeline-facing parameter contract.

A workflow shares one image with a set of spoke accounts, each in one or
more regions. Every (account, region) pair becomes one pipeline copy action
carrying ``CopyJobParameters`` as its JSON user parameters, and every
destination role is granted use of the image encryption key.

Example:
    share_with = [ShareWith(account_id="111111111111", regions=["us-west-2"])]
    actions = build_copy_actions("base-linux", share_with)
    statements = build_key_policy_statements(share_with)
"""

import json
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ami_replication.core.exceptions import InvalidJobParametersError

DEFAULT_DESTINATION_ROLE_NAME = "AmiCopyDestinationRole"


def key_alias_for(ami_name: str) -> str:
    """Alias of the encryption key protecting an image's snapshots."""
    return f"alias/ami/{ami_name}"


class ShareWith(BaseModel):
    """A spoke account and the regions the image is shared into."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", pattern=r"^\d{12}$")
    regions: list[str] = Field(..., min_length=1)

    @field_validator("regions")
    @classmethod
    def dedupe_regions(cls, regions: list[str]) -> list[str]:
        """Drop duplicate regions, keeping the first occurrence."""
        return list(dict.fromkeys(regions))


class CopyJobParameters(BaseModel):
    """JSON user parameters attached to one pipeline copy action."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    destination_account_id: str = Field(..., alias="destinationAccountId", pattern=r"^\d{12}$")
    destination_region: str = Field(..., alias="destinationRegion", min_length=1)
    destination_role_name: str = Field(
        default=DEFAULT_DESTINATION_ROLE_NAME,
        alias="destinationRoleName",
        min_length=1,
    )
    kms_key_alias: str = Field(..., alias="kmsKeyAlias", min_length=1)
    ami_name: str = Field(..., alias="amiName", min_length=1)

    @classmethod
    def from_user_parameters(cls, raw: str) -> "CopyJobParameters":
        """
        Parse the user parameter string of a pipeline job.

        Raises:
            InvalidJobParametersError: If the string is not JSON or misses fields.
        """
        try:
            return cls.model_validate(json.loads(raw))
        except (TypeError, json.JSONDecodeError) as e:
            raise InvalidJobParametersError(
                "User parameters are not valid JSON", {"error": str(e)}
            ) from e
        except ValidationError as e:
            raise InvalidJobParametersError(
                "User parameters failed validation",
                {"errors": e.errors(include_url=False)},
            ) from e

    def to_user_parameters(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), sort_keys=True)


# =============================================================================
# Fan-out
# =============================================================================


def expand_targets(share_with: Iterable[ShareWith]) -> list[tuple[str, str]]:
    """Flatten share-with entries into unique (account, region) pairs, in order."""
    pairs: list[tuple[str, str]] = []
    for entry in share_with:
        for region in entry.regions:
            pair = (entry.account_id, region)
            if pair not in pairs:
                pairs.append(pair)
    return pairs


def build_copy_actions(
    ami_name: str,
    share_with: Iterable[ShareWith],
    role_name: str = DEFAULT_DESTINATION_ROLE_NAME,
) -> list[dict[str, Any]]:
    """
    Describe one pipeline copy action per target.

    All actions share run order 1 so the pipeline starts them in parallel.

    Returns:
        Dicts with ``action_name``, ``run_order`` and ``user_parameters``.
    """
    actions = []
    for account_id, region in expand_targets(share_with):
        params = CopyJobParameters(
            destination_account_id=account_id,
            destination_region=region,
            destination_role_name=role_name,
            kms_key_alias=key_alias_for(ami_name),
            ami_name=ami_name,
        )
        actions.append(
            {
                "action_name": f"Copy-{account_id}-{region}",
                "run_order": 1,
                "user_parameters": params.to_user_parameters(),
            }
        )
    return actions


# =============================================================================
# Key policy
# =============================================================================


def build_key_policy_statements(
    share_with: Iterable[ShareWith],
    role_name: str = DEFAULT_DESTINATION_ROLE_NAME,
) -> list[dict[str, Any]]:
    """
    Compute the aggregate key policy grants for every destination role.

    The principal list is accumulated across all targets first, so the key is
    finalised with exactly two statements regardless of the number of
    accounts. Returns an empty list when there is nothing to share.
    """
    principals = sorted(
        {
            f"arn:aws:iam::{entry.account_id}:role/{role_name}"
            for entry in share_with
        }
    )
    if not principals:
        return []

    return [
        {
            "Sid": "AllowDestinationRolesUseOfKey",
            "Effect": "Allow",
            "Principal": {"AWS": principals},
            "Action": ["kms:Decrypt", "kms:DescribeKey"],
            "Resource": "*",
        },
        {
            "Sid": "AllowDestinationRolesGrantsForAwsResources",
            "Effect": "Allow",
            "Principal": {"AWS": principals},
            "Action": ["kms:CreateGrant"],
            "Resource": "*",
            "Condition": {"Bool": {"kms:GrantIsForAWSResource": True}},
        },
    ]
