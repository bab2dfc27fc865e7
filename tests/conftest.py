from pathlib import Path

import pytest

from autolot.data.repositories import ImportConfigRegistry, RunRepository, VehicleRepository
from autolot.data.storage import Database
from autolot.imports.models import FieldMapping, ImportConfig, ProcessingPolicy
from autolot.imports.pipeline import ImportPipeline
from autolot.imports.secrets import CredentialVault

DEALER = "dealer-1"
CSV_HEADER = "VIN,Make,Model,Year,Price,Miles"


def vin(n: int) -> str:
    """Valid 17-character VIN that differs only in its serial."""
    return f"1HGCM82633A{n:06d}"


def csv_rows(*rows: str) -> str:
    return "\n".join([CSV_HEADER, *rows]) + "\n"


def basic_mappings() -> list[FieldMapping]:
    return [
        FieldMapping(source_field="VIN", target_field="vin", field_order=1, is_required=True),
        FieldMapping(source_field="Make", target_field="make", field_order=2),
        FieldMapping(source_field="Model", target_field="model", field_order=3),
        FieldMapping(source_field="Year", target_field="year", field_type="integer", field_order=4),
        FieldMapping(source_field="Price", target_field="price", field_type="decimal", field_order=5),
        FieldMapping(source_field="Miles", target_field="odometer", field_type="integer", field_order=6),
    ]


@pytest.fixture
def db(tmp_path) -> Database:
    return Database(tmp_path / "autolot.db")


@pytest.fixture
def upload_dir(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def registry(db) -> ImportConfigRegistry:
    return ImportConfigRegistry(db, vault=CredentialVault("test-secret"))


@pytest.fixture
def vehicles(db) -> VehicleRepository:
    return VehicleRepository(db)


@pytest.fixture
def runs(db) -> RunRepository:
    return RunRepository(db)


@pytest.fixture
def pipeline(vehicles, runs, upload_dir) -> ImportPipeline:
    return ImportPipeline(vehicles=vehicles, runs=runs, upload_dir=upload_dir)


@pytest.fixture
def make_config():
    def _make(**processing) -> ImportConfig:
        return ImportConfig(
            id=1,
            dealer_id=DEALER,
            name="Nightly feed",
            field_mappings=basic_mappings(),
            processing=ProcessingPolicy(**processing),
        )

    return _make


@pytest.fixture
def drop_file(upload_dir):
    """Writes a file into the dealer inbox and returns its source_ref."""

    def _drop(content: str, name: str = "feed.csv", dealer_id: str = DEALER) -> str:
        inbox = upload_dir / dealer_id
        inbox.mkdir(parents=True, exist_ok=True)
        (inbox / name).write_text(content, encoding="utf-8")
        return name

    return _drop
