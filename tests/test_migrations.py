from pathlib import Path

import allure
from sqlalchemy import text

from auto_resume.supervisor.models import TaskCreate
from auto_resume.supervisor.repository import QueueRepository

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Task Queue Reliability"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = QueueRepository(tmp_path / "state" / "queue.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('queue_tasks', 'queue_task_events', 'supervisor_locks')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        single_running = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'index' AND name = 'uq_queue_tasks_single_running'",
            ),
        ).scalar_one_or_none()

    assert version == "20261017_0002"
    assert tables == ["queue_task_events", "queue_tasks", "supervisor_locks"]
    assert single_running == "uq_queue_tasks_single_running"
    repository.close()


def test_removing_a_task_drops_its_event_trail(repository: QueueRepository) -> None:
    task = repository.enqueue(TaskCreate(payload="one"))
    repository.remove(task.task_id)

    with repository.engine.connect() as connection:
        remaining = connection.execute(
            text("SELECT COUNT(*) FROM queue_task_events WHERE task_id = :task_id"),
            {"task_id": task.task_id},
        ).scalar_one()
    assert remaining == 0
