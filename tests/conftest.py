import pytest

from freightctl.dispatcher import ConnectionRegistry, Dispatcher
from freightctl.models import Principal
from freightctl.service import JobService


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "freight.db")


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def service(db_path, registry):
    return JobService(db_path, Dispatcher(registry))


@pytest.fixture
def shipper():
    return Principal("shipper-1", "shipper")


@pytest.fixture
def dispatcher_user():
    return Principal("disp-1", "dispatcher")


@pytest.fixture
def trucker_a():
    return Principal("trucker-a", "trucker")


@pytest.fixture
def trucker_b():
    return Principal("trucker-b", "trucker")


@pytest.fixture
def admin():
    return Principal("admin-1", "admin")


@pytest.fixture
def stranger():
    return Principal("someone-else", "dispatcher")


def make_fields(amount=2800, **overrides):
    fields = {
        "title": "Pallets to Denver",
        "description": "12 pallets of canned goods",
        "pickup": {"location": "Chicago, IL", "date": "2025-11-09", "city": "Chicago", "state": "IL"},
        "delivery": {"location": "Denver, CO", "date": "2025-11-11", "city": "Denver", "state": "CO"},
        "cargo": {"type": "dry_van", "weight": 18000, "special_requirements": ["liftgate"]},
        "payment": {"amount": amount},
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def job_fields():
    return make_fields


@pytest.fixture
def open_job(service, shipper):
    return service.create_job(shipper, make_fields())
