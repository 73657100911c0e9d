"""Tests for resources/parser.py and resources/models.py.

Tests for desired-state parsing, schema validation and reference extraction.
"""

from pathlib import Path

import pytest
from sitelayer.core.errors import DuplicateAddress, ParseError, SchemaViolation, UnknownReference
from sitelayer.resources import ResourceKind, load_document, parse
from sitelayer.resources.models import Reference, find_references, freeze, thaw


def bucket(name="site", **attributes):
    return {
        "kind": "storage_bucket",
        "name": name,
        "attributes": {"name": f"{name}-bucket", **attributes},
    }


class TestParse:
    """Tests for parse()."""

    def test_empty_document(self):
        state = parse(None)
        assert len(state) == 0
        assert state.content is None

    def test_address_inferred_from_name(self):
        state = parse({"resources": [bucket()]})
        descriptor = state.get("storage_bucket.site")
        assert descriptor is not None
        assert descriptor.kind is ResourceKind.STORAGE_BUCKET
        assert descriptor.name == "site"

    def test_explicit_address(self):
        raw = bucket()
        del raw["name"]
        raw["address"] = "storage_bucket.assets"
        state = parse({"resources": [raw]})
        assert state.addresses == ["storage_bucket.assets"]

    def test_defaults_applied(self):
        state = parse({"resources": [bucket()]})
        attributes = state.get("storage_bucket.site").plain_attributes()
        assert attributes == {
            "name": "site-bucket",
            "region": "us-east-1",
            "versioning": False,
            "tags": {},
        }

    def test_declaration_order_preserved(self):
        state = parse({"resources": [bucket("b"), bucket("a"), bucket("c")]})
        assert state.addresses == [
            "storage_bucket.b",
            "storage_bucket.a",
            "storage_bucket.c",
        ]

    def test_attributes_are_immutable(self):
        state = parse({"resources": [bucket(tags={"team": "web"})]})
        descriptor = state.get("storage_bucket.site")
        with pytest.raises(TypeError):
            descriptor.attributes["name"] = "other"
        with pytest.raises(TypeError):
            descriptor.attributes["tags"]["team"] = "ops"

    def test_references_become_edges(self):
        state = parse(
            {
                "resources": [
                    bucket(),
                    {
                        "kind": "bucket_policy",
                        "name": "site",
                        "attributes": {
                            "bucket": "${storage_bucket.site.id}",
                            "policy": {"Resource": "${storage_bucket.site.arn}/*"},
                        },
                    },
                ]
            }
        )
        policy = state.get("bucket_policy.site")
        assert set(policy.references) == {
            Reference("bucket_policy.site", "storage_bucket.site", "bucket", "id"),
            Reference("bucket_policy.site", "storage_bucket.site", "policy", "arn"),
        }
        assert policy.dependencies == {"storage_bucket.site"}

    def test_depends_on(self):
        cert = {
            "kind": "certificate",
            "name": "site",
            "attributes": {"domain_name": "example.com"},
            "depends_on": ["storage_bucket.site"],
        }
        state = parse({"resources": [bucket(), cert]})
        assert state.get("certificate.site").depends_on == {"storage_bucket.site"}

    def test_lifecycle(self):
        raw = bucket()
        raw["lifecycle"] = {"create_before_destroy": True}
        state = parse({"resources": [raw]})
        assert state.get("storage_bucket.site").lifecycle.create_before_destroy is True


class TestParseErrors:
    """Tests for validation failures."""

    def test_duplicate_address(self):
        with pytest.raises(DuplicateAddress) as exc_info:
            parse({"resources": [bucket(), bucket()]})
        assert exc_info.value.address == "storage_bucket.site"

    def test_unknown_kind(self):
        with pytest.raises(SchemaViolation, match="unknown kind"):
            parse({"resources": [{"kind": "lambda", "name": "x"}]})

    def test_address_must_match_kind(self):
        raw = bucket()
        raw["address"] = "certificate.site"
        with pytest.raises(SchemaViolation, match="does not match kind"):
            parse({"resources": [raw]})

    def test_unknown_attribute(self):
        with pytest.raises(SchemaViolation, match="unknown attributes"):
            parse({"resources": [bucket(colour="blue")]})

    def test_missing_required_attribute(self):
        raw = {"kind": "storage_bucket", "name": "site", "attributes": {}}
        with pytest.raises(SchemaViolation, match="missing required attributes name"):
            parse({"resources": [raw]})

    def test_wrong_attribute_type(self):
        with pytest.raises(SchemaViolation, match="expects bool"):
            parse({"resources": [bucket(versioning="yes")]})

    def test_bool_is_not_int(self):
        raw = {
            "kind": "dns_record",
            "name": "www",
            "attributes": {"zone_id": "Z1", "name": "www.example.com", "ttl": True},
        }
        with pytest.raises(SchemaViolation, match="expects int"):
            parse({"resources": [raw]})

    def test_reference_to_missing_resource(self):
        raw = {
            "kind": "bucket_policy",
            "name": "site",
            "attributes": {"bucket": "${storage_bucket.nope.id}", "policy": {}},
        }
        with pytest.raises(UnknownReference) as exc_info:
            parse({"resources": [raw]})
        assert exc_info.value.target == "storage_bucket.nope"

    def test_reference_to_unknown_output(self):
        raw = {
            "kind": "bucket_policy",
            "name": "site",
            "attributes": {"bucket": "${storage_bucket.site.colour}", "policy": {}},
        }
        with pytest.raises(UnknownReference, match="storage_bucket.site.colour"):
            parse({"resources": [bucket(), raw]})

    def test_self_reference(self):
        raw = bucket()
        raw["attributes"]["tags"] = {"arn": "${storage_bucket.site.arn}"}
        with pytest.raises(SchemaViolation, match="references itself"):
            parse({"resources": [raw]})

    def test_depends_on_unknown(self):
        raw = bucket()
        raw["depends_on"] = ["certificate.missing"]
        with pytest.raises(UnknownReference):
            parse({"resources": [raw]})

    def test_depends_on_must_be_list(self):
        raw = bucket()
        raw["depends_on"] = "storage_bucket.other"
        with pytest.raises(SchemaViolation, match="must be a list"):
            parse({"resources": [raw]})

    def test_unknown_top_level_key(self):
        with pytest.raises(SchemaViolation, match="Unknown top-level keys"):
            parse({"resources": [], "outputs": {}})

    def test_content_target_must_be_bucket(self):
        cert = {"kind": "certificate", "name": "site", "attributes": {"domain_name": "a.com"}}
        with pytest.raises(SchemaViolation, match="must be a storage_bucket"):
            parse({"resources": [cert], "content": {"source": "public", "target": "certificate.site"}})


class TestLoadDocument:
    """Tests for load_document()."""

    def test_loads_site_document(self, write_document):
        path = write_document()
        state = load_document(path)
        assert len(state) == 5
        assert state.content is not None
        assert state.content.target == "storage_bucket.site"
        assert state.content.source == (path.parent / "public").resolve()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="Cannot read"):
            load_document(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("resources: [unclosed")
        with pytest.raises(ParseError, match="Invalid YAML"):
            load_document(Path(path))


class TestReferenceHelpers:
    """Tests for reference scanning and freezing helpers."""

    def test_find_references_nested(self):
        value = {"a": ["${dns_record.www.fqdn}", {"b": "x-${certificate.site.arn}-y"}]}
        assert list(find_references(value)) == [
            ("dns_record.www", "fqdn"),
            ("certificate.site", "arn"),
        ]

    def test_freeze_thaw_roundtrip(self):
        value = {"a": [1, {"b": 2}]}
        assert thaw(freeze(value)) == value
