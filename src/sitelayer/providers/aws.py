"""
AWS provider.

Maps site kinds onto S3, ACM, Route 53 and CloudFront through aioboto3.
Client errors are translated into the provider error taxonomy: throttling,
5xx and connection problems are transient, not-found codes become
``ResourceNotFound`` and everything else is permanent.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aioboto3
import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from sitelayer.core.errors import (
    PermanentProviderError,
    ProviderError,
    ResourceNotFound,
    TransientProviderError,
)
from sitelayer.providers.base import ProviderHealth
from sitelayer.providers.registry import register_provider
from sitelayer.resources.models import ResourceKind

logger = structlog.get_logger()

TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "PriorRequestNotComplete",
        "OperationAborted",
        "ResourceInUseException",
    }
)

NOT_FOUND_CODES = frozenset(
    {
        "404",
        "NotFound",
        "NoSuchBucket",
        "NoSuchBucketPolicy",
        "NoSuchDistribution",
        "NoSuchHostedZone",
        "ResourceNotFoundException",
    }
)

CERTIFICATE_FAILED_STATES = frozenset({"FAILED", "VALIDATION_TIMED_OUT", "REVOKED", "EXPIRED"})

# Managed "CachingOptimized" cache policy
CACHING_OPTIMIZED_POLICY_ID = "658327ea-f89d-4fab-a63d-7e88639e58f6"
CLOUDFRONT_ZONE_ID = "Z2FDTNDATAQYW2"
ORIGIN_ID = "site-origin"


def translate_client_error(exc: ClientError, kind: str, provider_id: str | None) -> ProviderError:
    """Map a botocore ``ClientError`` onto the provider error taxonomy."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    message = error.get("Message") or str(exc)
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

    if code in NOT_FOUND_CODES and provider_id:
        return ResourceNotFound(kind, provider_id)
    details = {"code": code, "kind": kind, "provider_id": provider_id}
    if code in TRANSIENT_CODES or status >= 500:
        return TransientProviderError(f"{kind}: {code}: {message}", details)
    return PermanentProviderError(f"{kind}: {code}: {message}", details)


class AwsProvider:
    """Cloud provider for the static-site kinds on AWS."""

    name = "aws"

    def __init__(
        self,
        region: str = "us-east-1",
        profile: Optional[str] = None,
        *,
        session: Optional[aioboto3.Session] = None,
        certificate_region: str = "us-east-1",
        validation_record_wait: float = 60.0,
        disable_wait: float = 1800.0,
        poll_interval: float = 15.0,
    ) -> None:
        self.region = region
        # CloudFront only accepts certificates issued in us-east-1
        self.certificate_region = certificate_region
        self._session = session or aioboto3.Session(region_name=region, profile_name=profile)
        self._validation_record_wait = validation_record_wait
        self._disable_wait = disable_wait
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def _client(
        self,
        service: str,
        kind: str,
        provider_id: str | None = None,
        region: str | None = None,
    ) -> AsyncIterator[Any]:
        try:
            async with self._session.client(service, region_name=region or self.region) as client:
                yield client
        except ClientError as exc:
            raise translate_client_error(exc, kind, provider_id) from exc
        except (
            EndpointConnectionError,
            ConnectionClosedError,
            ConnectTimeoutError,
            ReadTimeoutError,
        ) as exc:
            raise TransientProviderError(f"{service}: {exc}", {"kind": kind}) from exc

    # -- CloudProvider -----------------------------------------------------

    async def create(self, kind: str, attributes: dict[str, Any]) -> str:
        handler = self._handler("create", kind)
        provider_id = await handler(attributes)
        logger.info("aws_resource_created", kind=kind, provider_id=provider_id)
        return provider_id

    async def read(self, kind: str, provider_id: str) -> dict[str, Any]:
        outputs = await self._handler("read", kind)(provider_id)
        outputs["id"] = provider_id
        return outputs

    async def update(self, kind: str, provider_id: str, attributes: dict[str, Any]) -> None:
        await self._handler("update", kind)(provider_id, attributes)
        logger.info("aws_resource_updated", kind=kind, provider_id=provider_id)

    async def delete(self, kind: str, provider_id: str) -> None:
        await self._handler("delete", kind)(provider_id)
        logger.info("aws_resource_deleted", kind=kind, provider_id=provider_id)

    async def check_condition(self, kind: str, provider_id: str) -> bool:
        if kind == ResourceKind.CERTIFICATE:
            return await self._certificate_issued(provider_id)
        if kind == ResourceKind.CDN_DISTRIBUTION:
            return await self._distribution_deployed(provider_id)
        return True

    async def health_check(self) -> ProviderHealth:
        try:
            async with self._client("sts", "health") as sts:
                identity = await sts.get_caller_identity()
        except ProviderError as exc:
            return ProviderHealth(status="unreachable", details=str(exc))
        return ProviderHealth(status="healthy", details=identity.get("Arn"))

    async def aclose(self) -> None:
        return None

    def _handler(self, operation: str, kind: str) -> Any:
        handler = getattr(self, f"_{operation}_{kind}", None)
        if handler is None:
            raise PermanentProviderError(f"aws provider does not support {operation} for {kind}")
        return handler

    # -- storage_bucket ----------------------------------------------------

    async def _create_storage_bucket(self, attributes: dict[str, Any]) -> str:
        name = attributes["name"]
        region = attributes.get("region") or self.region
        params: Dict[str, Any] = {"Bucket": name}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        async with self._client("s3", ResourceKind.STORAGE_BUCKET, name, region) as s3:
            try:
                await s3.create_bucket(**params)
            except ClientError as exc:
                # A retried create finds the bucket it made on the first attempt
                if exc.response.get("Error", {}).get("Code") != "BucketAlreadyOwnedByYou":
                    raise
            await s3.put_public_access_block(
                Bucket=name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": False,
                    "RestrictPublicBuckets": False,
                },
            )
        await self._update_storage_bucket(name, attributes)
        return name

    async def _read_storage_bucket(self, provider_id: str) -> dict[str, Any]:
        async with self._client("s3", ResourceKind.STORAGE_BUCKET, provider_id) as s3:
            await s3.head_bucket(Bucket=provider_id)
            location = await s3.get_bucket_location(Bucket=provider_id)
        region = location.get("LocationConstraint") or "us-east-1"
        return {
            "arn": f"arn:aws:s3:::{provider_id}",
            "regional_domain_name": f"{provider_id}.s3.{region}.amazonaws.com",
        }

    async def _update_storage_bucket(self, provider_id: str, attributes: dict[str, Any]) -> None:
        async with self._client("s3", ResourceKind.STORAGE_BUCKET, provider_id) as s3:
            status = "Enabled" if attributes.get("versioning") else "Suspended"
            await s3.put_bucket_versioning(
                Bucket=provider_id, VersioningConfiguration={"Status": status}
            )
            tags = attributes.get("tags") or {}
            if tags:
                await s3.put_bucket_tagging(Bucket=provider_id, Tagging={"TagSet": _tag_set(tags)})
            else:
                await s3.delete_bucket_tagging(Bucket=provider_id)

    async def _delete_storage_bucket(self, provider_id: str) -> None:
        async with self._client("s3", ResourceKind.STORAGE_BUCKET, provider_id) as s3:
            paginator = s3.get_paginator("list_object_versions")
            async for page in paginator.paginate(Bucket=provider_id):
                objects = [
                    {"Key": item["Key"], "VersionId": item["VersionId"]}
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
                ]
                if objects:
                    await s3.delete_objects(
                        Bucket=provider_id, Delete={"Objects": objects, "Quiet": True}
                    )
            await s3.delete_bucket(Bucket=provider_id)

    # -- bucket_policy -----------------------------------------------------

    async def _create_bucket_policy(self, attributes: dict[str, Any]) -> str:
        bucket = attributes["bucket"]
        await self._update_bucket_policy(bucket, attributes)
        return bucket

    async def _read_bucket_policy(self, provider_id: str) -> dict[str, Any]:
        async with self._client("s3", ResourceKind.BUCKET_POLICY, provider_id) as s3:
            response = await s3.get_bucket_policy(Bucket=provider_id)
        return {"policy": json.loads(response["Policy"])}

    async def _update_bucket_policy(self, provider_id: str, attributes: dict[str, Any]) -> None:
        async with self._client("s3", ResourceKind.BUCKET_POLICY, provider_id) as s3:
            await s3.put_bucket_policy(Bucket=provider_id, Policy=json.dumps(attributes["policy"]))

    async def _delete_bucket_policy(self, provider_id: str) -> None:
        async with self._client("s3", ResourceKind.BUCKET_POLICY, provider_id) as s3:
            await s3.delete_bucket_policy(Bucket=provider_id)

    # -- certificate -------------------------------------------------------

    async def _create_certificate(self, attributes: dict[str, Any]) -> str:
        domain = attributes["domain_name"]
        sans = list(attributes.get("subject_alternative_names") or [])
        params: Dict[str, Any] = {
            "DomainName": domain,
            "ValidationMethod": attributes.get("validation_method", "DNS"),
            "IdempotencyToken": _token(domain, *sans),
        }
        if sans:
            params["SubjectAlternativeNames"] = sans
        if attributes.get("tags"):
            params["Tags"] = _tag_set(attributes["tags"])

        async with self._client(
            "acm", ResourceKind.CERTIFICATE, region=self.certificate_region
        ) as acm:
            response = await acm.request_certificate(**params)
        arn = response["CertificateArn"]

        zone_id = attributes.get("validation_zone_id")
        if zone_id:
            await self._publish_validation_records(arn, zone_id, "UPSERT")
        return arn

    async def _read_certificate(self, provider_id: str) -> dict[str, Any]:
        certificate = await self._describe_certificate(provider_id)
        outputs: Dict[str, Any] = {"arn": provider_id, "status": certificate.get("Status")}
        records = _validation_records(certificate)
        if records:
            outputs.update(
                validation_record_name=records[0]["Name"],
                validation_record_type=records[0]["Type"],
                validation_record_value=records[0]["Value"],
            )
        return outputs

    async def _update_certificate(self, provider_id: str, attributes: dict[str, Any]) -> None:
        tags = attributes.get("tags") or {}
        if tags:
            async with self._client(
                "acm", ResourceKind.CERTIFICATE, provider_id, self.certificate_region
            ) as acm:
                await acm.add_tags_to_certificate(CertificateArn=provider_id, Tags=_tag_set(tags))
        zone_id = attributes.get("validation_zone_id")
        if zone_id:
            await self._publish_validation_records(provider_id, zone_id, "UPSERT")

    async def _delete_certificate(self, provider_id: str) -> None:
        async with self._client(
            "acm", ResourceKind.CERTIFICATE, provider_id, self.certificate_region
        ) as acm:
            await acm.delete_certificate(CertificateArn=provider_id)

    async def _certificate_issued(self, provider_id: str) -> bool:
        certificate = await self._describe_certificate(provider_id)
        status = certificate.get("Status")
        if status in CERTIFICATE_FAILED_STATES:
            reason = certificate.get("FailureReason", "unknown reason")
            raise PermanentProviderError(
                f"certificate {provider_id} is {status}: {reason}",
                {"provider_id": provider_id, "status": status},
            )
        return status == "ISSUED"

    async def _describe_certificate(self, provider_id: str) -> dict[str, Any]:
        async with self._client(
            "acm", ResourceKind.CERTIFICATE, provider_id, self.certificate_region
        ) as acm:
            response = await acm.describe_certificate(CertificateArn=provider_id)
        return response["Certificate"]

    async def _publish_validation_records(self, arn: str, zone_id: str, action: str) -> None:
        """Write the DNS ownership-proof records ACM asks for into ``zone_id``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._validation_record_wait
        while True:
            records = _validation_records(await self._describe_certificate(arn))
            if records:
                break
            if loop.time() >= deadline:
                # The create is retried; the idempotency token returns the same ARN
                raise TransientProviderError(
                    f"certificate {arn} has no validation record yet", {"provider_id": arn}
                )
            await asyncio.sleep(min(self._poll_interval, 5.0))

        changes = [
            {
                "Action": action,
                "ResourceRecordSet": {
                    "Name": record["Name"],
                    "Type": record["Type"],
                    "TTL": 300,
                    "ResourceRecords": [{"Value": record["Value"]}],
                },
            }
            for record in {r["Name"]: r for r in records}.values()
        ]
        async with self._client("route53", ResourceKind.CERTIFICATE, arn) as route53:
            await route53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={"Comment": f"validation for {arn}", "Changes": changes},
            )
        logger.info("certificate_validation_published", provider_id=arn, zone_id=zone_id)

    # -- dns_record --------------------------------------------------------

    async def _create_dns_record(self, attributes: dict[str, Any]) -> str:
        zone_id = attributes["zone_id"]
        name = _fqdn(attributes["name"])
        record_type = attributes.get("type", "A")
        provider_id = f"{zone_id}/{name}/{record_type}"
        await self._update_dns_record(provider_id, attributes)
        return provider_id

    async def _read_dns_record(self, provider_id: str) -> dict[str, Any]:
        record = await self._find_record_set(provider_id)
        return {"fqdn": record["Name"].rstrip(".")}

    async def _update_dns_record(self, provider_id: str, attributes: dict[str, Any]) -> None:
        zone_id, name, record_type = provider_id.split("/", 2)
        record_set: Dict[str, Any] = {"Name": name, "Type": record_type}
        alias = attributes.get("alias")
        if alias:
            record_set["AliasTarget"] = {
                "HostedZoneId": alias["zone_id"],
                "DNSName": alias["dns_name"],
                "EvaluateTargetHealth": bool(alias.get("evaluate_target_health", False)),
            }
        else:
            record_set["TTL"] = attributes.get("ttl", 300)
            record_set["ResourceRecords"] = [{"Value": v} for v in attributes.get("values", [])]
        await self._change_record(provider_id, zone_id, "UPSERT", record_set)

    async def _delete_dns_record(self, provider_id: str) -> None:
        zone_id = provider_id.split("/", 1)[0]
        record = await self._find_record_set(provider_id)
        await self._change_record(provider_id, zone_id, "DELETE", record)

    async def _find_record_set(self, provider_id: str) -> dict[str, Any]:
        zone_id, name, record_type = provider_id.split("/", 2)
        async with self._client("route53", ResourceKind.DNS_RECORD, provider_id) as route53:
            response = await route53.list_resource_record_sets(
                HostedZoneId=zone_id,
                StartRecordName=name,
                StartRecordType=record_type,
                MaxItems="1",
            )
        for record in response.get("ResourceRecordSets", []):
            if _fqdn(record["Name"]) == name and record["Type"] == record_type:
                return record
        raise ResourceNotFound(ResourceKind.DNS_RECORD, provider_id)

    async def _change_record(
        self, provider_id: str, zone_id: str, action: str, record_set: dict[str, Any]
    ) -> None:
        async with self._client("route53", ResourceKind.DNS_RECORD, provider_id) as route53:
            await route53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={"Changes": [{"Action": action, "ResourceRecordSet": record_set}]},
            )

    # -- cdn_distribution --------------------------------------------------

    async def _create_cdn_distribution(self, attributes: dict[str, Any]) -> str:
        reference = _token(json.dumps(attributes, sort_keys=True))
        config = distribution_config(attributes, caller_reference=reference)
        async with self._client("cloudfront", ResourceKind.CDN_DISTRIBUTION) as cloudfront:
            response = await cloudfront.create_distribution(DistributionConfig=config)
        return response["Distribution"]["Id"]

    async def _read_cdn_distribution(self, provider_id: str) -> dict[str, Any]:
        distribution = await self._get_distribution(provider_id)
        return {
            "arn": distribution["ARN"],
            "domain_name": distribution["DomainName"],
            "hosted_zone_id": CLOUDFRONT_ZONE_ID,
            "status": distribution["Status"],
        }

    async def _update_cdn_distribution(self, provider_id: str, attributes: dict[str, Any]) -> None:
        async with self._client(
            "cloudfront", ResourceKind.CDN_DISTRIBUTION, provider_id
        ) as cloudfront:
            current = await cloudfront.get_distribution_config(Id=provider_id)
            reference = current["DistributionConfig"]["CallerReference"]
            await cloudfront.update_distribution(
                Id=provider_id,
                IfMatch=current["ETag"],
                DistributionConfig=distribution_config(attributes, caller_reference=reference),
            )

    async def _delete_cdn_distribution(self, provider_id: str) -> None:
        """Disable, wait for the disabled config to deploy, then delete."""
        async with self._client(
            "cloudfront", ResourceKind.CDN_DISTRIBUTION, provider_id
        ) as cloudfront:
            current = await cloudfront.get_distribution_config(Id=provider_id)
            config = current["DistributionConfig"]
            etag = current["ETag"]
            if config.get("Enabled"):
                config["Enabled"] = False
                response = await cloudfront.update_distribution(
                    Id=provider_id, IfMatch=etag, DistributionConfig=config
                )
                etag = response["ETag"]
                logger.info("distribution_disabled", provider_id=provider_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._disable_wait
        while not await self._distribution_deployed(provider_id):
            if loop.time() >= deadline:
                raise TransientProviderError(
                    f"distribution {provider_id} is still deploying its disabled configuration",
                    {"provider_id": provider_id},
                )
            await asyncio.sleep(self._poll_interval)

        async with self._client(
            "cloudfront", ResourceKind.CDN_DISTRIBUTION, provider_id
        ) as cloudfront:
            await cloudfront.delete_distribution(Id=provider_id, IfMatch=etag)

    async def _distribution_deployed(self, provider_id: str) -> bool:
        distribution = await self._get_distribution(provider_id)
        return distribution["Status"] == "Deployed"

    async def _get_distribution(self, provider_id: str) -> dict[str, Any]:
        async with self._client(
            "cloudfront", ResourceKind.CDN_DISTRIBUTION, provider_id
        ) as cloudfront:
            response = await cloudfront.get_distribution(Id=provider_id)
        return response["Distribution"]


def distribution_config(attributes: dict[str, Any], *, caller_reference: str) -> dict[str, Any]:
    """CloudFront ``DistributionConfig`` for a distribution in front of a bucket origin."""
    aliases = list(attributes.get("aliases") or [])
    geo = attributes.get("geo_restriction") or {"type": "none", "locations": []}
    locations = list(geo.get("locations") or [])

    certificate_arn = attributes.get("certificate_arn")
    if certificate_arn:
        viewer_certificate: Dict[str, Any] = {
            "ACMCertificateArn": certificate_arn,
            "SSLSupportMethod": "sni-only",
            "MinimumProtocolVersion": "TLSv1.2_2021",
        }
    else:
        viewer_certificate = {"CloudFrontDefaultCertificate": True}

    restriction: Dict[str, Any] = {
        "RestrictionType": geo.get("type", "none"),
        "Quantity": len(locations),
    }
    if locations:
        restriction["Items"] = locations

    return {
        "CallerReference": caller_reference,
        "Aliases": {"Quantity": len(aliases), "Items": aliases},
        "DefaultRootObject": attributes.get("default_root_object", "index.html"),
        "Origins": {
            "Quantity": 1,
            "Items": [
                {
                    "Id": ORIGIN_ID,
                    "DomainName": attributes["origin_domain"],
                    "S3OriginConfig": {"OriginAccessIdentity": ""},
                }
            ],
        },
        "DefaultCacheBehavior": {
            "TargetOriginId": ORIGIN_ID,
            "ViewerProtocolPolicy": "redirect-to-https",
            "CachePolicyId": CACHING_OPTIMIZED_POLICY_ID,
            "Compress": True,
        },
        "Comment": attributes.get("comment", ""),
        "PriceClass": attributes.get("price_class", "PriceClass_100"),
        "Enabled": bool(attributes.get("enabled", True)),
        "ViewerCertificate": viewer_certificate,
        "Restrictions": {"GeoRestriction": restriction},
    }


def _validation_records(certificate: dict[str, Any]) -> List[dict[str, Any]]:
    return [
        option["ResourceRecord"]
        for option in certificate.get("DomainValidationOptions", [])
        if option.get("ResourceRecord")
    ]


def _tag_set(tags: dict[str, Any]) -> List[dict[str, str]]:
    return [{"Key": str(key), "Value": str(value)} for key, value in sorted(tags.items())]


def _token(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


def _create_aws_provider(
    region: str = "us-east-1", profile: Optional[str] = None, **_: Any
) -> AwsProvider:
    return AwsProvider(region=region, profile=profile)


register_provider(
    "aws",
    _create_aws_provider,
    description="S3, ACM, Route 53 and CloudFront via aioboto3",
)
