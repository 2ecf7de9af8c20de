"""
Tests for settings
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from config import Settings


def test_endpoint_follows_studio_port():
    settings = Settings(enrichment_endpoint_url=None, host="0.0.0.0", port=8000)
    assert settings.enrichment_endpoint == "http://localhost:8000/api/apollo-enrichment"


def test_endpoint_uses_specific_bind_host():
    settings = Settings(enrichment_endpoint_url=None, host="127.0.0.1", port=9000)
    assert settings.enrichment_endpoint == "http://127.0.0.1:9000/api/apollo-enrichment"


def test_configured_endpoint_wins():
    settings = Settings(enrichment_endpoint_url="https://functions.example.com/enrich", port=8000)
    assert settings.enrichment_endpoint == "https://functions.example.com/enrich"


def test_inter_batch_delay_in_seconds():
    assert Settings(inter_batch_delay_ms=1500).inter_batch_delay == 1.5


@pytest.mark.parametrize("field,value", [
    ("batch_size", 7),
    ("retry_attempts", 2),
    ("inter_batch_delay_ms", -1),
    ("log_level", "LOUD"),
])
def test_rejected_values(field, value):
    with pytest.raises(PydanticValidationError):
        Settings(**{field: value})
