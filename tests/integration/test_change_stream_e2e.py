"""End-to-end tests against a single-node MongoDB replica set."""

import threading
import time

import pymongo
import pytest

from mongowatch.connectors.cdc.events import WatchStatus
from mongowatch.connectors.cdc.processor import DocumentProcessor
from mongowatch.connectors.cdc.supervisor import BackoffPolicy

from fakes import RecordingCollectionWatcher

# Skip integration tests if testcontainers not available
try:
    from testcontainers.core.container import DockerContainer
    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    TESTCONTAINERS_AVAILABLE = False
    pytestmark = pytest.mark.skip("testcontainers not available")

FAST = BackoffPolicy(initial_interval=0.05, multiplier=1.0, max_interval=0.05)


@pytest.fixture(scope="module")
def mongodb():
    """Single-node replica set (required for change streams), no auth."""
    if not TESTCONTAINERS_AVAILABLE:
        pytest.skip("testcontainers not available")

    container = (
        DockerContainer("mongo:6.0")
        .with_command("--replSet rs0 --bind_ip_all")
        .with_exposed_ports(27017)
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available: {e}")

    try:
        # mongod needs a moment before it accepts the initiate command
        for _ in range(60):
            exit_code, _ = container.get_container().exec_run([
                "mongosh", "--quiet", "--eval",
                "rs.initiate({_id:'rs0',members:[{_id:0,host:'localhost:27017'}]})"
            ])
            if exit_code == 0:
                break
            time.sleep(0.5)
        yield container
    finally:
        container.stop()


@pytest.fixture
def client(mongodb):
    host = mongodb.get_container_host_ip()
    port = mongodb.get_exposed_port(27017)
    client = pymongo.MongoClient(f"mongodb://{host}:{port}", directConnection=True)
    for _ in range(60):
        if client.admin.command("hello").get("isWritablePrimary"):
            break
        time.sleep(0.5)
    yield client
    client.close()


@pytest.fixture
def databases(client):
    target = client["testdb"]
    local = client["mongowatch"]
    target.drop_collection("orders")
    local.drop_collection("orders_resume_points")
    target.create_collection("orders")
    yield target, local
    target.drop_collection("orders")
    local.drop_collection("orders_resume_points")


def run_in_thread(processor, actions):
    result = {}

    def run():
        result["status"] = processor.start_with_retry(actions)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, result


def wait_for(predicate, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.1)
    raise AssertionError("condition not met in time")


@pytest.mark.integration
def test_inserts_delivered_and_resumed(databases):
    """Documents are delivered once across a stop/restart."""
    target, local = databases
    resume = local["orders_resume_points"]

    processor = DocumentProcessor.from_databases(target, "orders", local, max_await_time_ms=200, policy=FAST)
    actions = RecordingCollectionWatcher()
    thread, result = run_in_thread(processor, actions)
    wait_for(lambda: processor.manager.active)
    time.sleep(0.5)

    target["orders"].insert_many([{"_id": i, "n": i} for i in range(5)])
    wait_for(lambda: len(actions.calls) == 5)
    processor.stop()
    thread.join(timeout=10)

    assert result["status"] == WatchStatus.STOPPED
    assert [doc["_id"] for _, doc in actions.calls] == [0, 1, 2, 3, 4]
    wait_for(lambda: resume.count_documents({}) == 1)

    target["orders"].insert_many([{"_id": i, "n": i} for i in range(5, 10)])
    processor = DocumentProcessor.from_databases(target, "orders", local, max_await_time_ms=200, policy=FAST)
    actions = RecordingCollectionWatcher()
    thread, result = run_in_thread(processor, actions)
    wait_for(lambda: len(actions.calls) >= 5)
    processor.stop()
    thread.join(timeout=10)

    assert [doc["_id"] for _, doc in actions.calls] == [5, 6, 7, 8, 9]
    assert resume.count_documents({}) == 1


@pytest.mark.integration
def test_update_and_delete_routed(databases):
    target, local = databases
    processor = DocumentProcessor.from_databases(target, "orders", local, max_await_time_ms=200, policy=FAST)
    actions = RecordingCollectionWatcher()
    thread, _ = run_in_thread(processor, actions)
    wait_for(lambda: processor.manager.active)
    time.sleep(0.5)

    target["orders"].insert_one({"_id": 1, "status": "new"})
    target["orders"].update_one({"_id": 1}, {"$set": {"status": "paid"}})
    target["orders"].delete_one({"_id": 1})
    wait_for(lambda: len(actions.calls) == 3)
    processor.stop()
    thread.join(timeout=10)

    assert [op for op, _ in actions.calls] == ["insert", "update", "delete"]
    assert actions.calls[1][1] == {"_id": 1, "status": "paid"}
