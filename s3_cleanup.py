#!/usr/bin/env python3
"""
S3 Cleanup - interactively select and delete a lingering S3 bucket.

Storage backends refuse to delete a bucket that still holds data, so the
selected bucket is emptied first: every object version and delete marker is
removed one call at a time, then any remaining current objects are removed
in batches, and finally the bucket itself is deleted.

Credentials come from the ambient AWS configuration (environment variables,
shared config files or an instance role).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

import boto3
import botocore.config
import botocore.exceptions

if TYPE_CHECKING:
    from boto3 import Session
    from mypy_boto3_s3 import S3Client


# === Logging Configuration ===
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"

# DeleteObjects accepts at most this many keys per request.
BATCH_DELETE_LIMIT = 1000

# Location constraints that predate region names.
LEGACY_LOCATIONS = {"EU": "eu-west-1"}

CLIENT_ERRORS = (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError)


# === Errors ===
class CleanupError(Exception):
    """Base class for errors that end a cleanup run."""

    phase = "cleanup"


class ListError(CleanupError):
    phase = "listing buckets"


class PromptError(CleanupError):
    phase = "prompt"


class LocationError(CleanupError):
    phase = "resolving bucket location"


class EmptyError(CleanupError):
    phase = "emptying bucket"


class DeleteBucketError(CleanupError):
    phase = "deleting bucket"


DeleteError = DeleteBucketError


@dataclass
class CleanupConfig:
    """Configuration settings for bucket cleanup."""

    profile_name: str | None = None
    region: str | None = None
    default_region: str = DEFAULT_REGION
    endpoint_url: str | None = None
    max_retries: int = 5
    connection_pool_size: int = 10

    @classmethod
    def from_environment(cls) -> CleanupConfig:
        """
        Create configuration from environment variables.

        Credentials are not read here; boto3 resolves them from its usual
        provider chain.
        """
        raw_retries = os.environ.get("S3_CLEANUP_MAX_RETRIES", "5")
        try:
            max_retries = int(raw_retries)
        except ValueError:
            logger.error(f"Invalid S3_CLEANUP_MAX_RETRIES value: {raw_retries!r}")
            logger.error("Example: export S3_CLEANUP_MAX_RETRIES=5")
            sys.exit(1)

        return cls(
            profile_name=os.environ.get("AWS_PROFILE") or None,
            region=os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
            or None,
            default_region=os.environ.get("S3_CLEANUP_DEFAULT_REGION")
            or DEFAULT_REGION,
            endpoint_url=os.environ.get("S3_CLEANUP_ENDPOINT_URL") or None,
            max_retries=max_retries,
        )


@dataclass
class DeletionStats:
    """Counts of what an emptying run removed."""

    versions_deleted: int = 0
    markers_deleted: int = 0
    objects_deleted: int = 0

    @property
    def total(self) -> int:
        return self.versions_deleted + self.markers_deleted + self.objects_deleted


class State(Enum):
    """Steps of a cleanup run. DONE, ABORTED and FAILED are terminal."""

    LIST = "list"
    SELECT = "select"
    CONFIRM = "confirm"
    RESOLVE_REGION = "resolve_region"
    EMPTY = "empty"
    DELETE = "delete"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


class BucketCleaner:
    """
    Lists, empties and deletes S3 buckets.

    Every call is synchronous and issued one at a time. Mutating calls are
    expected to go through a client built by ``client_for_region`` for the
    bucket's own region.

    Attributes:
        config: Configuration settings for the cleaner.
    """

    def __init__(self, config: CleanupConfig, session: Session | None = None) -> None:
        """
        Initialize the cleaner.

        Args:
            config: Cleanup configuration settings.
            session: Optional pre-built boto3 session.
        """
        self.config = config
        self._session = session
        self._s3_client: S3Client | None = None
        self._boto_config: botocore.config.Config | None = None

    @property
    def session(self) -> Session:
        """Lazily create and cache boto3 session."""
        if self._session is None:
            self._session = boto3.session.Session(
                profile_name=self.config.profile_name,
                region_name=self.config.region,
            )
        return self._session

    @property
    def boto_config(self) -> botocore.config.Config:
        """Lazily create and cache boto configuration."""
        if self._boto_config is None:
            self._boto_config = botocore.config.Config(
                max_pool_connections=self.config.connection_pool_size,
                retries={"max_attempts": self.config.max_retries, "mode": "standard"},
            )
        return self._boto_config

    @property
    def s3_client(self) -> S3Client:
        """Lazily create and cache the default-region S3 client."""
        if self._s3_client is None:
            self._s3_client = self.session.client(
                "s3", endpoint_url=self.config.endpoint_url, config=self.boto_config
            )
        return self._s3_client

    def client_for_region(self, region: str) -> S3Client:
        """Create an S3 client scoped to ``region``."""
        logger.debug(f"Creating S3 client for region {region}")
        return self.session.client(
            "s3",
            region_name=region,
            endpoint_url=self.config.endpoint_url,
            config=self.boto_config,
        )

    def list_buckets(self) -> list[str]:
        """
        List all buckets visible to the current credentials.

        Returns:
            List of bucket names.

        Raises:
            ListError: If the listing call fails.
        """
        try:
            response = self.s3_client.list_buckets()
        except CLIENT_ERRORS as e:
            raise ListError(f"Failed to list buckets: {e}") from e
        return [
            bucket["Name"] for bucket in response.get("Buckets", []) if bucket.get("Name")
        ]

    def resolve_region(self, bucket_name: str) -> str:
        """
        Determine the region a bucket lives in.

        An empty location constraint means the bucket is in the default
        region.

        Args:
            bucket_name: Name of the bucket.

        Returns:
            The region code (e.g., 'us-east-1', 'eu-west-2').

        Raises:
            LocationError: If the location lookup fails.
        """
        try:
            response = self.s3_client.get_bucket_location(Bucket=bucket_name)
        except CLIENT_ERRORS as e:
            raise LocationError(
                f"Unable to get bucket location for {bucket_name}: {e}"
            ) from e

        location = response.get("LocationConstraint")
        if not location:
            return self.config.default_region
        return LEGACY_LOCATIONS.get(location, location)

    def _delete_version(
        self, s3_client: S3Client, bucket_name: str, entry: dict, kind: str
    ) -> None:
        key = entry["Key"]
        logger.info(f"Deleting {kind}: {key}")
        try:
            s3_client.delete_object(
                Bucket=bucket_name, Key=key, VersionId=entry["VersionId"]
            )
        except CLIENT_ERRORS as e:
            raise EmptyError(
                f"Failed to delete {kind} {key!r} ({entry['VersionId']}) "
                f"in {bucket_name}: {e}"
            ) from e

    def delete_versions(
        self, s3_client: S3Client, bucket_name: str, stats: DeletionStats
    ) -> None:
        """
        Delete every object version and delete marker, one call each.

        Stops at the first failed delete. Deletes already issued stay done.

        Raises:
            EmptyError: If listing or any single delete fails.
        """
        paginator = s3_client.get_paginator("list_object_versions")
        try:
            for page in paginator.paginate(Bucket=bucket_name):
                for version in page.get("Versions", []):
                    self._delete_version(s3_client, bucket_name, version, "version")
                    stats.versions_deleted += 1

                for marker in page.get("DeleteMarkers", []):
                    self._delete_version(
                        s3_client, bucket_name, marker, "delete marker"
                    )
                    stats.markers_deleted += 1
        except CLIENT_ERRORS as e:
            raise EmptyError(
                f"Failed to list object versions in {bucket_name}: {e}"
            ) from e

    def delete_current_objects(
        self, s3_client: S3Client, bucket_name: str, stats: DeletionStats
    ) -> None:
        """
        Batch-delete whatever the plain object listing still returns.

        Covers buckets that never had versioning enabled.

        Raises:
            EmptyError: If listing fails or any key in a batch is rejected.
        """
        paginator = s3_client.get_paginator("list_objects")
        try:
            for page in paginator.paginate(Bucket=bucket_name):
                objects_to_delete = [
                    {"Key": obj["Key"]} for obj in page.get("Contents", [])
                ]

                for i in range(0, len(objects_to_delete), BATCH_DELETE_LIMIT):
                    batch = objects_to_delete[i : i + BATCH_DELETE_LIMIT]
                    response = s3_client.delete_objects(
                        Bucket=bucket_name,
                        Delete={"Objects": batch, "Quiet": True},
                    )

                    errors = response.get("Errors", [])
                    if errors:
                        for error in errors:
                            logger.error(
                                f"Error deleting {error.get('Key')}: "
                                f"{error.get('Code')} - {error.get('Message')}"
                            )
                        first = errors[0]
                        raise EmptyError(
                            f"Batch delete rejected {len(errors)} objects in "
                            f"{bucket_name}, first {first.get('Key')!r}: "
                            f"{first.get('Code')} - {first.get('Message')}"
                        )

                    stats.objects_deleted += len(batch)
                    logger.info(f"Deleted {len(batch)} objects from {bucket_name}")
        except CLIENT_ERRORS as e:
            raise EmptyError(f"Failed to batch delete objects in {bucket_name}: {e}") from e

    def empty_bucket(self, s3_client: S3Client, bucket_name: str) -> DeletionStats:
        """
        Remove every version, delete marker and current object from a bucket.

        The batch pass only runs once the version pass has finished cleanly.

        Args:
            s3_client: Region-scoped S3 client.
            bucket_name: Name of the bucket to empty.

        Returns:
            Counts of what was deleted.

        Raises:
            EmptyError: On the first failure in either pass.
        """
        stats = DeletionStats()
        start_time = time.time()

        self.delete_versions(s3_client, bucket_name, stats)
        self.delete_current_objects(s3_client, bucket_name, stats)

        self._log_statistics(bucket_name, stats, time.time() - start_time)
        return stats

    def _log_statistics(
        self, bucket_name: str, stats: DeletionStats, elapsed: float
    ) -> None:
        rate = stats.total / elapsed if elapsed > 0 else 0
        logger.info(f"Bucket '{bucket_name}' emptied")
        logger.info(f"Versions deleted: {stats.versions_deleted}")
        logger.info(f"Delete markers deleted: {stats.markers_deleted}")
        logger.info(f"Current objects deleted: {stats.objects_deleted}")
        logger.info(f"Time elapsed: {elapsed:.2f} seconds")
        logger.info(f"Average rate: {rate:.1f} objects/sec")

    def delete_bucket(self, s3_client: S3Client, bucket_name: str) -> None:
        """
        Delete a bucket. The bucket must already be empty.

        Raises:
            DeleteBucketError: If the backend refuses, e.g. BucketNotEmpty
                or AccessDenied.
        """
        try:
            s3_client.delete_bucket(Bucket=bucket_name)
        except CLIENT_ERRORS as e:
            raise DeleteBucketError(str(e)) from e


# === Prompts ===
def normalize_confirmation(answer: str) -> str:
    """Return 'yes' or 'no' for a confirmation answer, ignoring case."""
    normalized = answer.lower()
    if normalized not in ("yes", "no"):
        raise ValueError("please enter 'yes' or 'no'")
    return normalized


def confirm_deletion(bucket_name: str, ask: Callable[[str], str] = input) -> bool:
    """
    Ask the operator to confirm deleting a bucket.

    Only 'yes' or 'no' are accepted; anything else is asked again.

    Args:
        bucket_name: Bucket about to be deleted.
        ask: Function reading one line of input for a prompt.

    Returns:
        True if the operator answered yes.

    Raises:
        PromptError: If input is closed or interrupted.
    """
    prompt = f"Are you sure you want to delete the bucket '{bucket_name}' (yes/no): "
    while True:
        try:
            answer = ask(prompt)
        except (EOFError, KeyboardInterrupt) as e:
            raise PromptError("confirmation interrupted") from e

        try:
            return normalize_confirmation(answer) == "yes"
        except ValueError as e:
            logger.warning(str(e))


def select_bucket(bucket_names: list[str], ask: Callable[[str], str] = input) -> str:
    """
    Let the operator pick one bucket by number or by name.

    Args:
        bucket_names: Buckets to choose from.
        ask: Function reading one line of input for a prompt.

    Returns:
        The selected bucket name.

    Raises:
        PromptError: If nothing was selected or input is closed.
    """
    logger.info("=== Buckets Found ===")
    for i, bucket in enumerate(bucket_names, 1):
        logger.info(f"{i}. {bucket}")

    while True:
        try:
            answer = ask("Select bucket to delete (number or name, blank to cancel): ")
        except (EOFError, KeyboardInterrupt) as e:
            raise PromptError("selection interrupted") from e

        answer = answer.strip()
        if not answer:
            raise PromptError("no bucket selected")

        if answer in bucket_names:
            return answer

        if answer.isdigit() and 1 <= int(answer) <= len(bucket_names):
            return bucket_names[int(answer) - 1]

        logger.warning(f"Invalid selection: {answer!r}")


# === Workflow ===
def _report(error: CleanupError) -> None:
    logger.error(f"Error in {error.phase}: {error}")


def run_cleanup(cleaner: BucketCleaner, ask: Callable[[str], str] = input) -> State:
    """
    Run one interactive cleanup: list, select, confirm, then empty and delete.

    Nothing is modified before the operator confirms, and nothing is
    retried or rolled back after a failure.

    Returns:
        The terminal state the run ended in.
    """
    try:
        buckets = cleaner.list_buckets()
    except ListError as e:
        _report(e)
        return State.FAILED

    if not buckets:
        logger.info("No buckets found.")
        return State.ABORTED

    try:
        bucket_name = select_bucket(buckets, ask)
        confirmed = confirm_deletion(bucket_name, ask)
    except PromptError as e:
        _report(e)
        return State.ABORTED

    if not confirmed:
        logger.info("Bucket deletion cancelled.")
        return State.ABORTED

    state = State.RESOLVE_REGION
    try:
        region = cleaner.resolve_region(bucket_name)
        logger.info(f"Now deleting: {bucket_name} ({region})")
        s3_client = cleaner.client_for_region(region)

        state = State.EMPTY
        cleaner.empty_bucket(s3_client, bucket_name)

        state = State.DELETE
        cleaner.delete_bucket(s3_client, bucket_name)
    except CleanupError as e:
        logger.debug(f"Cleanup failed during {state.value}")
        _report(e)
        return State.FAILED

    logger.info(f"Successfully deleted bucket: {bucket_name}")
    return State.DONE


# === CLI ===
def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog="s3-cleanup",
        description="S3 Cleanup - delete lingering S3 buckets left over from development",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s cleanup        Select a bucket, empty it and delete it

Environment Variables:
  AWS_PROFILE                  Shared config profile to use
  AWS_REGION                   Region for the initial bucket listing
  S3_CLEANUP_DEFAULT_REGION    Region of buckets without a location constraint
  S3_CLEANUP_ENDPOINT_URL      Custom S3-compatible endpoint
  S3_CLEANUP_MAX_RETRIES       Client retry attempts (default: 5)
        """,
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.add_parser(
        "cleanup",
        help="Cleanup lingering s3 buckets",
        description="Interactively select an S3 bucket, empty it and delete it.",
    )
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
    return args


def main(argv: list[str] | None = None) -> None:
    """Entry point for the s3-cleanup command."""
    args = parse_arguments(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command != "cleanup":
        return

    config = CleanupConfig.from_environment()
    try:
        run_cleanup(BucketCleaner(config))
    except KeyboardInterrupt:
        logger.warning("Operation interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
