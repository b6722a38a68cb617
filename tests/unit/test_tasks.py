from unittest.mock import AsyncMock, patch

import pytest
from celery.exceptions import Retry
from redis.exceptions import ConnectionError as RedisConnectionError

from src.core.celery_app import celery_app
from src.core.exceptions import StorageError
from src.pipeline.tasks import sweep_abandoned_uploads


def test_beat_schedules_the_reaper():
    entry = celery_app.conf.beat_schedule["sweep-abandoned-uploads"]
    assert entry["task"] == "src.pipeline.tasks.sweep_abandoned_uploads"
    assert entry["schedule"] >= 60


def test_sweep_task_reports_reclaimed_count():
    with patch("src.pipeline.tasks._sweep_once", new=AsyncMock(return_value=3)):
        assert sweep_abandoned_uploads() == {"reclaimed": 3}


@pytest.mark.parametrize("error", [
    StorageError("bucket unreachable", backend="s3"),
    RedisConnectionError("connection refused"),
])
def test_sweep_task_retries_on_infrastructure_errors(error):
    with patch("src.pipeline.tasks._sweep_once", new=AsyncMock(side_effect=error)), \
            patch.object(sweep_abandoned_uploads, "retry", side_effect=Retry()) as retry:
        with pytest.raises(Retry):
            sweep_abandoned_uploads()

    assert retry.call_args.kwargs["exc"] is error
