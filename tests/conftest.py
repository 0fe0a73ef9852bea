import pytest
from fakes import RecordingSupervisor, ScriptedConversion

from sketchshift.repos.jobs import InMemoryJobRepo
from sketchshift.schemas.job import JobKind
from sketchshift.services.conversion import ConversionClient, ConversionInvoker
from sketchshift.services.storage import LocalFileStore, StorageGateway


@pytest.fixture
def local_store(tmp_path):
    return LocalFileStore(upload_root=str(tmp_path / "uploads"))


@pytest.fixture
def gateway(local_store):
    return StorageGateway([local_store])


@pytest.fixture
def repos():
    return {
        JobKind.SCRIPT: InMemoryJobRepo(JobKind.SCRIPT),
        JobKind.IMAGE: InMemoryJobRepo(JobKind.IMAGE),
    }


@pytest.fixture
def conversion():
    return ScriptedConversion()


@pytest.fixture
def client(conversion):
    return ConversionClient(
        script_endpoint="https://convert.example/pde",
        image_endpoint="https://convert.example/webp",
        timeout=5,
        session=conversion.session,
    )


@pytest.fixture
def invoker(repos, client, gateway):
    return ConversionInvoker(repos=repos, client=client, storage=gateway, lease_seconds=60)


@pytest.fixture
def supervisor():
    return RecordingSupervisor()
