import datetime as dt

import csv_task_tracker as ctt


def make_task(**overrides) -> ctt.TaskRecord:
    base = dict(
        task_id='1',
        name='Write report',
        status='In Progress',
        assigned_user='alice',
        due_date=dt.date(2025, 7, 20),
        priority='High',
        notes='Review final draft',
    )
    base.update(overrides)
    return ctt.TaskRecord(**base)


def row_of(task: ctt.TaskRecord) -> dict:
    return dict(
        task_id=task.task_id,
        name=task.name,
        status=task.status,
        assigned_user=task.assigned_user,
        due_date=task.due_date,
        priority=task.priority,
        notes=task.notes,
    )
