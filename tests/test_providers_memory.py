"""Tests for the in-memory provider and the provider registry."""

import pytest
from sitelayer.core.errors import (
    ConfigurationError,
    PermanentProviderError,
    ResourceNotFound,
    TransientProviderError,
)
from sitelayer.providers import CloudProvider, MemoryProvider, create_provider, list_providers
from sitelayer.providers.aws import AwsProvider
from sitelayer.providers.registry import ProviderRegistry


class TestMemoryProvider:
    """Tests for MemoryProvider."""

    def test_satisfies_protocol(self):
        assert isinstance(MemoryProvider(), CloudProvider)

    @pytest.mark.asyncio
    async def test_create_read_delete(self):
        provider = MemoryProvider()
        provider_id = await provider.create("storage_bucket", {"name": "site"})
        assert provider_id == "storage_bucket-0001"
        assert "site" in provider.buckets

        outputs = await provider.read("storage_bucket", provider_id)
        assert outputs["arn"] == "arn:aws:s3:::site"
        assert outputs["id"] == provider_id

        await provider.delete("storage_bucket", provider_id)
        assert provider.objects == {}
        assert "site" not in provider.buckets
        with pytest.raises(ResourceNotFound):
            await provider.read("storage_bucket", provider_id)

    @pytest.mark.asyncio
    async def test_kind_mismatch_is_not_found(self):
        provider = MemoryProvider()
        provider_id = await provider.create("storage_bucket", {"name": "site"})
        with pytest.raises(ResourceNotFound):
            await provider.read("certificate", provider_id)

    @pytest.mark.asyncio
    async def test_condition_checks(self):
        provider = MemoryProvider(condition_checks={"certificate": 2})
        arn = await provider.create("certificate", {"domain_name": "example.com"})
        assert (await provider.read("certificate", arn))["status"] == "PENDING_VALIDATION"
        assert [await provider.check_condition("certificate", arn) for _ in range(3)] == [
            False,
            False,
            True,
        ]
        assert (await provider.read("certificate", arn))["status"] == "ISSUED"

    @pytest.mark.asyncio
    async def test_condition_never_holds(self):
        provider = MemoryProvider(condition_checks={"cdn_distribution": None})
        dist = await provider.create("cdn_distribution", {"origin_domain": "o"})
        for _ in range(5):
            assert await provider.check_condition("cdn_distribution", dist) is False

    @pytest.mark.asyncio
    async def test_update_redeploys_distribution(self):
        provider = MemoryProvider()
        dist = await provider.create("cdn_distribution", {"origin_domain": "a"})
        assert await provider.check_condition("cdn_distribution", dist)
        await provider.update("cdn_distribution", dist, {"origin_domain": "b"})
        assert (await provider.read("cdn_distribution", dist))["status"] == "InProgress"

    @pytest.mark.asyncio
    async def test_scripted_failures(self):
        provider = MemoryProvider()
        provider.fail("create", kind="storage_bucket", match={"name": "bad"}, transient=True, times=2)

        with pytest.raises(TransientProviderError):
            await provider.create("storage_bucket", {"name": "bad"})
        # Other attributes are unaffected
        await provider.create("storage_bucket", {"name": "good"})
        with pytest.raises(TransientProviderError):
            await provider.create("storage_bucket", {"name": "bad"})
        await provider.create("storage_bucket", {"name": "bad"})
        assert provider.in_flight == 0

    @pytest.mark.asyncio
    async def test_fail_condition(self):
        provider = MemoryProvider()
        provider.fail_condition("certificate", "CAA record forbids issuance")
        arn = await provider.create("certificate", {"domain_name": "example.com"})
        with pytest.raises(PermanentProviderError, match="CAA"):
            await provider.check_condition("certificate", arn)

    @pytest.mark.asyncio
    async def test_records_calls(self):
        provider = MemoryProvider()
        provider_id = await provider.create("dns_record", {"name": "www.example.com."})
        await provider.read("dns_record", provider_id)
        assert [c.operation for c in provider.calls] == ["create", "read"]
        assert provider.calls_for("read")[0].provider_id == provider_id
        assert provider.find("dns_record", name="www.example.com.")[0].outputs == {
            "fqdn": "www.example.com"
        }

    @pytest.mark.asyncio
    async def test_health(self):
        health = await MemoryProvider().health_check()
        assert health.status == "healthy"
        assert health.details == "0 objects"


class TestProviderRegistry:
    """Tests for provider registration and lookup."""

    def test_builtin_providers(self):
        names = {spec.name for spec in list_providers()}
        assert {"aws", "memory"} <= names

    def test_create_memory(self):
        assert isinstance(create_provider("memory", region="eu-west-1"), MemoryProvider)

    def test_create_aws(self):
        provider = create_provider("aws", region="eu-west-1")
        assert isinstance(provider, AwsProvider)
        assert provider.region == "eu-west-1"

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="not registered"):
            create_provider("gcp")

    def test_isolated_registry(self):
        registry = ProviderRegistry()
        registry.register("fake", MemoryProvider, description="test double")
        assert registry.list()[0].description == "test double"
        with pytest.raises(ValueError):
            registry.register("", MemoryProvider)
