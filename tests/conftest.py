"""Pytest configuration and shared fixtures for dashboard tests."""

import sys
from pathlib import Path

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings  # noqa: E402
from domain.dashboard.linker import link  # noqa: E402
from domain.dashboard.models import EntityKind, RawBatch  # noqa: E402
from domain.dashboard.normalizer import index_by_id, normalize, normalize_financiers  # noqa: E402

FALLBACK = (40.7608, -111.8910)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )


# ============================================================================
# Shared Fixtures - Raw Records
# ============================================================================


@pytest.fixture
def raw_ahjs():
    """Authority rows in the shapes the CRM sync produces."""
    return [
        {
            "ahj_item_id": "A1",
            "raw_payload": {
                "raw_payload": {
                    "name": "Provo City",
                    "classification": "A",
                    "latitude": 40.2338,
                    "longitude": -111.6585,
                }
            },
        },
        {
            "ahj_item_id": "A2",
            "raw_payload": {
                "raw_payload": {
                    "name": "Orem City",
                    "classification": "Class B",
                    "latitude": "40.2969",
                    "longitude": "-111.6946",
                }
            },
        },
        {"ahj_item_id": "A3", "name": "Lehi City", "classification": "C"},
    ]


@pytest.fixture
def raw_utilities():
    """Utility rows, one with a nested classification and no coordinates."""
    return [
        {
            "utility_company_item_id": "U1",
            "company_name": "Rocky Mountain Power",
            "classification": "A",
            "latitude": 40.76,
            "longitude": -111.89,
        },
        {
            "utility_company_item_id": "U2",
            "company_name": "Provo Power",
            "raw_payload": {"classification": "B"},
        },
    ]


@pytest.fixture
def raw_financiers():
    """Financier rows."""
    return [{"fin_id": "F1", "company_name": "Sunrise Capital", "classification": "A"}]


@pytest.fixture
def raw_projects():
    """Project rows covering nested coordinates, fallback placement and dangling keys."""
    return [
        {
            "project_id": "P1",
            "address": "100 Main St",
            "city": "Provo",
            "state": "UT",
            "zip": "84601",
            "ahj_item_id": "A1",
            "utility_company_item_id": "U1",
            "fin_id": "F1",
            "status": "Complete",
            "latitude": 40.23,
            "longitude": -111.66,
            "rep_id": "rep-1",
            "qualifies_45_day": True,
        },
        {
            "project_id": "P2",
            "address": "200 Center St",
            "city": "Orem",
            "state": "UT",
            "zip": "84057",
            "ahj_item_id": "A2",
            "utility_company_item_id": "U2",
            "status": "Install Scheduled",
            "raw_payload": {"latitude": 40.29, "longitude": -111.69},
            "rep_id": "rep-2",
            "qualifies_45_day": "no",
        },
        {
            "project_id": "P3",
            "address": "300 State St",
            "city": "Lehi",
            "state": "UT",
            "zip": "84043",
            "ahj_item_id": "A3",
            "utility_company_item_id": "U1",
            "status": "Permit Submitted",
            "rep_id": "rep-1",
            "qualifies_45_day": "yes",
        },
        {
            "project_id": "P4",
            "address": "400 Unknown Rd",
            "city": "Springville",
            "state": "UT",
            "zip": "84663",
            "ahj_item_id": "A9",
            "utility_company_item_id": "U2",
            "status": "Complete",
            "latitude": 40.16,
            "longitude": -111.61,
            "rep_id": "rep-3",
        },
    ]


@pytest.fixture
def raw_batch(raw_projects, raw_ahjs, raw_utilities, raw_financiers):
    """The four raw collections as one batch."""
    return RawBatch.from_lists(raw_projects, raw_ahjs, raw_utilities, raw_financiers)


# ============================================================================
# Shared Fixtures - Normalized Data
# ============================================================================


@pytest.fixture
def dataset(raw_projects, raw_ahjs, raw_utilities, raw_financiers):
    """Normalized entities and linked projects built from the raw fixtures."""
    ahjs = normalize(raw_ahjs, EntityKind.AHJ)
    utilities = normalize(raw_utilities, EntityKind.UTILITY)
    financiers = normalize_financiers(raw_financiers)
    projects = link(
        raw_projects,
        index_by_id(ahjs),
        index_by_id(utilities),
        index_by_id(financiers),
        FALLBACK,
    )
    return {
        "projects": projects,
        "ahjs": ahjs,
        "utilities": utilities,
        "financiers": financiers,
    }


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's .env file."""
    return Settings(
        _env_file=None,
        supabase_url="https://example.supabase.co",
        supabase_key="test-key",
        cache_dir=tmp_path / "cache",
        fetch_timeout_seconds=2.0,
    )
