import json

import httpx
import pytest

from adcraft.services.tasks.factory import get_task_enqueuer
from adcraft.services.tasks.http import HttpTaskEnqueuer
from adcraft.services.tasks.local import InProcessEnqueuer


@pytest.mark.anyio
async def test_enqueue_posts_job_id_with_bearer_secret(settings_factory):
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(202, json={"status": "accepted"})

  settings = settings_factory(task_service_provider="http", base_url="https://worker.internal/")
  enqueuer = HttpTaskEnqueuer(settings, transport=httpx.MockTransport(handler))
  await enqueuer.enqueue("job-42")

  assert len(seen) == 1
  assert str(seen[0].url) == "https://worker.internal/internal/tasks/run-job"
  assert seen[0].headers["authorization"] == "Bearer task-secret"
  assert json.loads(seen[0].content) == {"job_id": "job-42"}


@pytest.mark.anyio
async def test_enqueue_raises_on_error_status(settings_factory):
  settings = settings_factory(task_service_provider="http", base_url="https://worker.internal")
  enqueuer = HttpTaskEnqueuer(settings, transport=httpx.MockTransport(lambda request: httpx.Response(503)))
  with pytest.raises(httpx.HTTPStatusError):
    await enqueuer.enqueue("job-42")


@pytest.mark.anyio
async def test_enqueue_requires_base_url(settings_factory):
  enqueuer = HttpTaskEnqueuer(settings_factory(base_url=None))
  with pytest.raises(RuntimeError):
    await enqueuer.enqueue("job-42")


def test_factory_selects_provider(settings_factory):
  assert isinstance(get_task_enqueuer(settings_factory()), InProcessEnqueuer)
  http_settings = settings_factory(task_service_provider="http", base_url="https://worker.internal")
  assert isinstance(get_task_enqueuer(http_settings), HttpTaskEnqueuer)


@pytest.mark.anyio
async def test_dispatch_failure_keeps_job_admitted_for_resume(harness_factory, settings_factory):
  settings = settings_factory(base_url="https://worker.internal")
  failing = HttpTaskEnqueuer(settings, transport=httpx.MockTransport(lambda request: httpx.Response(500)))
  harness = harness_factory(enqueuer=failing)
  job_id = await harness.submit()

  job = await harness.orchestrator.get_status(job_id)
  assert job.state.value == "Pending"
  assert job.admitted_at is not None
  assert (await harness.orchestrator.gate.snapshot("owner-1")).active == 1
