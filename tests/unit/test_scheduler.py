from unittest.mock import MagicMock, patch

from apps.scheduler.main import Schedule, default_schedules, tick


def test_default_schedules_cover_every_job() -> None:
    jobs = {schedule.job["job"] for schedule in default_schedules()}

    assert jobs == {"sync", "recovery", "repair"}


def test_tick_publishes_only_claimed_slots() -> None:
    """Redis 上 slot 還沒過期的 schedule 不可以重複發送"""
    schedules = [
        Schedule("sync", 30, {"job": "sync"}),
        Schedule("repair", 3600, {"job": "repair"}),
    ]
    client = MagicMock()
    # sync slot is free, repair slot is still held
    client.set.side_effect = [True, None]
    channel = MagicMock()

    with patch("apps.scheduler.main.publish_job") as mock_publish:
        published = tick(channel, client, schedules)

    assert published == 1
    mock_publish.assert_called_once_with(channel, {"job": "sync"})
    first_claim = client.set.call_args_list[0]
    assert first_claim.args[0] == "schedule:sync"
    assert first_claim.kwargs == {"nx": True, "ex": 30}
