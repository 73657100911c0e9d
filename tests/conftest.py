"""Root test configuration."""

import logging
import textwrap

import pytest
import pytest_asyncio
import structlog
from sitelayer.config.settings import Settings
from sitelayer.providers.memory import MemoryProvider
from sitelayer.state.store import StateStore


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


SITE_YAML = """
resources:
  - kind: storage_bucket
    name: site
    attributes:
      name: example-site
      tags:
        project: example
  - kind: bucket_policy
    name: site
    attributes:
      bucket: ${storage_bucket.site.id}
      policy:
        Version: "2012-10-17"
        Statement:
          - Effect: Allow
            Principal: "*"
            Action: s3:GetObject
            Resource: ${storage_bucket.site.arn}/*
  - kind: certificate
    name: site
    attributes:
      domain_name: example.com
      validation_zone_id: Z123
  - kind: cdn_distribution
    name: site
    attributes:
      origin_domain: ${storage_bucket.site.regional_domain_name}
      aliases: [example.com]
      certificate_arn: ${certificate.site.arn}
  - kind: dns_record
    name: apex
    attributes:
      zone_id: Z123
      name: example.com
      type: A
      alias:
        dns_name: ${cdn_distribution.site.domain_name}
        zone_id: ${cdn_distribution.site.hosted_zone_id}
content:
  source: public
  target: storage_bucket.site
"""


@pytest.fixture
def settings(tmp_path):
    """Fast settings: no backoff, short condition budget, file-backed state."""
    return Settings(
        _env_file=None,
        state_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        provider="memory",
        concurrency=4,
        max_attempts=3,
        backoff_multiplier=0,
        backoff_min=0,
        backoff_max=0,
        condition_poll_interval=0.01,
        condition_timeout=0.5,
        lock_holder="tests",
    )


@pytest.fixture
def provider():
    return MemoryProvider()


@pytest_asyncio.fixture
async def store(settings):
    state_store = StateStore(settings.state_url)
    await state_store.initialize()
    yield state_store
    await state_store.close()


@pytest.fixture
def write_document(tmp_path):
    """Write a site document (and a content directory) and return its path."""

    def _write(text: str = SITE_YAML, name: str = "site.yaml"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text))
        public = tmp_path / "public"
        public.mkdir(exist_ok=True)
        (public / "index.html").write_text("<h1>hello</h1>")
        (public / "css").mkdir(exist_ok=True)
        (public / "css" / "site.css").write_text("body { margin: 0; }")
        return path

    return _write
