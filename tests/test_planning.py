import pytest

from chainstream.application.planning import merge_intervals, plan_chunks, plan_start_block


@pytest.mark.parametrize("start,end,step", [
    (0, 0, 1),
    (0, 9, 3),
    (5, 5, 100),
    (1_000, 1_050, 20),
    (17, 1_234_567, 200_000),
    (100, 399, 100),
])
def test_plan_covers_range_contiguously(start, end, step):
    chunks = plan_chunks(start, end, step)
    assert chunks[0].start == start
    assert chunks[-1].end == end
    for a, b in zip(chunks, chunks[1:]):
        assert a.end + 1 == b.start
    assert sum(c.span() for c in chunks) == end - start + 1
    assert all(c.span() <= step for c in chunks)
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_plan_reference_scenario():
    chunks = plan_chunks(1_000, 1_050, 20)
    assert [(c.start, c.end) for c in chunks] == [(1000, 1019), (1020, 1039), (1040, 1050)]
    assert all(c.status == "pending" and c.attempts == 0 for c in chunks)


def test_plan_empty_and_first_index():
    assert plan_chunks(10, 9, 5) == []
    chunks = plan_chunks(0, 9, 5, first_index=7)
    assert [c.index for c in chunks] == [7, 8]


def test_plan_rejects_non_positive_step():
    with pytest.raises(ValueError):
        plan_chunks(0, 10, 0)


def test_start_block_policy():
    # tier window shorter than the contract's life
    assert plan_start_block(1_000, 100_000, 50_400) == 100_000 - 50_400
    # contract younger than the window
    assert plan_start_block(90_000, 100_000, 50_400) == 90_000
    # unlimited history starts at deployment
    assert plan_start_block(1_000, 100_000, None) == 1_000
    # window larger than the chain
    assert plan_start_block(0, 100, 50_400) == 0


def test_start_block_without_deployment():
    assert plan_start_block(None, 100_000, 50_400) == 49_600
    assert plan_start_block(None, 100_000, None, fallback_window=10_000) == 90_000
    assert plan_start_block(None, 5_000, None, fallback_window=10_000) == 0


def test_merge_intervals():
    assert merge_intervals([]) == []
    assert merge_intervals([(10, 19), (0, 9), (30, 39), (35, 50)]) == [(0, 19), (30, 50)]
