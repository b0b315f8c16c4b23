from progress import compute_progress, round_half_up


def test_no_tasks_and_no_hours_is_zero():
    assert compute_progress(0, 0, 0, 0) == 0
    assert compute_progress(None, None, 0, 0) == 0


def test_task_ratio_without_estimates():
    assert compute_progress(0, 0, 1, 2) == 50
    assert compute_progress(0, 0, 3, 3) == 100
    assert compute_progress(0, 0, 0, 4) == 0


def test_hours_ratio_with_estimates():
    assert compute_progress(10, 5, 0, 0) == 50
    assert compute_progress(3, 1, 0, 3) == 33


def test_estimates_without_logged_hours_ignore_completed_tasks():
    assert compute_progress(10, 0, 2, 2) == 0


def test_hours_ratio_is_capped_at_100():
    assert compute_progress(10, 15, 0, 1) == 100


def test_half_rounds_up():
    # 1/8 = 12.5%
    assert compute_progress(8, 1, 0, 0) == 13
    assert compute_progress(0, 0, 1, 8) == 13
    assert round_half_up(2.5) == 3
    assert round_half_up(0.49) == 0
