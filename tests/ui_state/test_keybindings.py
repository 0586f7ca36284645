import json

import csv_task_tracker as ctt


def test_initial_selection_and_render(ui):
    assert ui.controller.selected_id == '1'
    assert ui.value('mode') == 'normal'
    assert ui.value('column_index') == 1

    table = ui.table_text()
    assert table.splitlines()[0].startswith('ID')
    assert 'Write report' in table
    assert 'Line one Line two' in table
    assert '3/3 tasks' in ui.status_text()
    assert '[modified]' not in ui.status_text()


def test_row_and_column_navigation(ui):
    ui.press('j')
    assert ui.controller.selected_id == '2'
    ui.press('down')
    ui.press('down')
    assert ui.controller.selected_id == '3'
    assert ui.value('current_index') == 2
    ui.press('k')
    assert ui.controller.selected_id == '2'

    ui.press('l')
    assert ui.value('column_index') == 2
    ui.press('h')
    ui.press('left')
    assert ui.value('column_index') == 0
    ui.press('h')
    assert ui.value('column_index') == len(ctt.GRID_COLUMNS) - 1


def test_add_then_edit_name(ui):
    ui.press('a')
    assert ui.controller.selected_id == '4'
    assert ui.value('status_line') == 'Added task 4.'
    assert '[modified]' in ui.status_text()

    ui.press('enter', requires={'selected_task'})
    assert ui.value('mode') == 'edit'
    assert ui.value('edit_buffer') == 'New Task'
    assert 'Edit Task: New Task' in ui.status_text()

    for _ in range(len('New Task')):
        ui.press('backspace')
    ui.type_text('Ship it')
    ui.press('enter', requires={'select_task', 'edit_target'})

    assert ui.value('mode') == 'normal'
    assert ui.store.get('4').name == 'Ship it'
    assert ui.value('status_line') == 'Task 4: Task updated'


def test_rejected_edit_keeps_value(ui):
    ui.press('l')
    ui.press('e')
    assert ui.value('edit_buffer') == 'In Progress'
    for _ in range(len('In Progress')):
        ui.press('backspace')
    ui.type_text('Blocked')
    ui.press('enter', requires={'select_task', 'edit_target'})

    assert ui.store.get('1').status == 'In Progress'
    assert ui.value('status_line').startswith('Invalid Status')
    assert ui.controller.dirty is False


def test_duplicate_id_edit_is_rejected(ui):
    ui.press('h')
    ui.press('e')
    ui.press('backspace')
    ui.type_text('2')
    ui.press('enter', requires={'select_task', 'edit_target'})

    assert ui.value('status_line') == 'TaskID 2 is already used by another task'
    assert [t.task_id for t in ui.store.tasks] == ['1', '2', '3']


def test_id_edit_moves_selection_with_task(ui):
    ui.press('h')
    ui.press('e')
    ui.type_text('0')
    ui.press('enter', requires={'select_task', 'edit_target'})

    assert ui.value('status_line') == 'TaskID changed from 1 to 10'
    assert ui.controller.selected_id == '10'
    assert ui.store.next_numeric_id == 11


def test_escape_cancels_edit(ui):
    ui.press('e')
    ui.type_text(' v2')
    ui.press('escape', requires={'edit_buffer'})

    assert ui.value('mode') == 'normal'
    assert ui.value('status_line') == 'Edit cancelled'
    assert ui.store.get('1').name == 'Write report'


def test_delete_confirmation(ui):
    ui.press('x')
    assert ui.value('mode') == 'confirm-delete'
    assert ui.value('status_line') == "Delete task 'Write report'? (y/n)"

    ui.press('n')
    assert ui.value('mode') == 'normal'
    assert ui.value('status_line') == 'Delete cancelled.'
    assert len(ui.store) == 3

    ui.press('delete')
    ui.press('y')
    assert ui.value('status_line') == 'Task deleted successfully.'
    assert [t.task_id for t in ui.store.tasks] == ['2', '3']
    assert ui.controller.selected_id == '2'


def test_toggle_hide_completed(ui):
    ui.press('j')
    assert ui.controller.selected_id == '2'

    ui.press('c', requires={'sync_selection'})
    assert ui.controller.hide_completed is True
    assert 'Old chores' not in ui.table_text()
    assert ui.controller.selected_id == '3'
    assert 'hide completed' in ui.status_text()

    ui.press('c', requires={'sync_selection'})
    assert 'Old chores' in ui.table_text()
    assert ui.value('status_line') == 'Showing all tasks.'


def test_save_key_writes_file(ui):
    ui.press('a')
    ui.press('c-s')
    assert ui.value('status_line') == 'Tasks saved successfully (tasks.csv).'
    assert ui.controller.dirty is False
    assert '"4","New Task"' in ui.csv_path.read_text(encoding='utf-8')


def test_reload_refuses_with_unsaved_changes(ui):
    ui.press('a')
    ui.press('r')
    assert ui.value('status_line') == 'Unsaved changes; save (s) before reloading.'
    assert len(ui.store) == 4


def test_quit_when_clean_saves_ui_state(ui):
    ui.press('j')
    ui.press('l')
    ui.press('q')

    assert ui.exits == [True]
    state = json.loads(ui.state_path.read_text(encoding='utf-8'))
    assert state == {'hide_completed': False, 'current_index': 1, 'column_index': 2}


def test_quit_with_changes_then_cancel_and_discard(ui):
    ui.press('a')
    ui.press('q')
    assert ui.exits == []
    assert ui.value('mode') == 'confirm-close'
    assert '(s)ave' in ui.value('status_line')

    ui.press('c', requires={'mode'})
    assert ui.value('mode') == 'normal'
    assert ui.value('status_line') == 'Close cancelled.'

    ui.press('q')
    ui.press('d')
    assert ui.exits == [True]
    assert '"4"' not in ui.csv_path.read_text(encoding='utf-8')


def test_quit_with_save(ui):
    ui.press('a')
    ui.press('q')
    ui.press('s', requires={'finish'})

    assert ui.exits == [True]
    assert '"4","New Task"' in ui.csv_path.read_text(encoding='utf-8')


def test_quit_save_failure_stays_open(ui):
    ui.cfg.csv_path = 'nowhere/tasks.csv'
    ui.press('a')
    ui.press('q')
    ui.press('s', requires={'finish'})

    assert ui.exits == []
    assert ui.value('mode') == 'confirm-close'
    assert ui.value('status_line').startswith('Error saving tasks:')


def test_ui_state_is_restored(make_ui):
    first = make_ui()
    first.state_path.write_text(json.dumps({'hide_completed': True, 'current_index': 1, 'column_index': 4}),
                                encoding='utf-8')

    ui = make_ui()
    assert ui.controller.hide_completed is True
    assert ui.controller.selected_id == '3'
    assert ui.value('column_index') == 4


def test_corrupt_ui_state_is_ignored(make_ui, tmp_path):
    (tmp_path / 'ui_state.json').write_text('{not json', encoding='utf-8')
    ui = make_ui()
    assert ui.controller.selected_id == '1'
    assert ui.controller.hide_completed is False
