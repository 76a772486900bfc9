from concurrent.futures import ThreadPoolExecutor

from guardian.app.coordinator.request_ids import (
    MonotonicRequestIdGenerator,
    RandomRequestIdGenerator,
)


def test_monotonic_ids_are_sequential():
    generator = MonotonicRequestIdGenerator()

    assert [generator.next_id() for _ in range(3)] == [
        "GRD-000001",
        "GRD-000002",
        "GRD-000003",
    ]


def test_monotonic_ids_are_unique_across_threads():
    generator = MonotonicRequestIdGenerator(prefix="T-")

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda _: generator.next_id(), range(2000)))

    assert len(set(ids)) == 2000


def test_random_ids_are_unique_and_prefixed():
    generator = RandomRequestIdGenerator()
    ids = {generator.next_id() for _ in range(500)}

    assert len(ids) == 500
    assert all(i.startswith("GRD-") for i in ids)
