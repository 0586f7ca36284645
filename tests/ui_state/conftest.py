import datetime as dt
from types import SimpleNamespace

import pytest
from prompt_toolkit.input import DummyInput
from prompt_toolkit.output import DummyOutput

import csv_task_tracker as ctt

from .helpers import dummy_event, find_closure_value, fragments_text, get_binding


@pytest.fixture
def make_ui(tmp_path, sample_csv_text):
    """Build the grid app over ``tasks.csv`` in tmp_path without running it."""
    (tmp_path / 'tasks.csv').write_text(sample_csv_text, encoding='utf-8')
    state_path = tmp_path / 'ui_state.json'

    def _make(cfg=None):
        cfg = cfg or ctt.Config()
        store = ctt.TaskStore(numeric_ids=cfg.numeric_ids, user_provider=lambda: 'tester')
        gateway = ctt.PersistenceGateway(cfg, base_dir=tmp_path)
        controller = ctt.TrackerController(store, gateway, hide_completed=cfg.hide_completed)
        controller.on_load()
        app = ctt.run_ui(controller, cfg, today=dt.date(2025, 7, 20), state_path=str(state_path),
                         input=DummyInput(), output=DummyOutput(), run=False)
        handlers = [b.handler for b in app.key_bindings.bindings]
        hsplit = app.layout.container
        exits = []

        def press(key, requires=None, data=''):
            get_binding(app, key, requires=requires)(dummy_event(data=data, exits=exits))

        def type_text(text):
            for ch in text:
                press('<any>', requires={'edit_buffer'}, data=ch)

        return SimpleNamespace(
            app=app,
            cfg=cfg,
            store=store,
            controller=controller,
            state_path=state_path,
            csv_path=tmp_path / 'tasks.csv',
            exits=exits,
            press=press,
            type_text=type_text,
            value=lambda name: find_closure_value(handlers, name),
            table_text=lambda: fragments_text(hsplit.children[1].content.text()),
            status_text=lambda: fragments_text(hsplit.children[2].content.text()),
        )

    return _make


@pytest.fixture
def ui(make_ui):
    return make_ui()
