from types import SimpleNamespace

from prompt_toolkit.keys import Keys

KEY_ALIASES = {
    'enter': Keys.Enter,
    'escape': Keys.Escape,
    'backspace': Keys.Backspace,
    'delete': Keys.Delete,
    'c-s': Keys.ControlS,
}


def closure_map(func):
    return {var: cell for var, cell in zip(func.__code__.co_freevars, func.__closure__ or [])}


def closure_value(func, name):
    return closure_map(func)[name].cell_contents


def find_closure_value(funcs, name):
    """Search closures (and closures of captured functions) for ``name``."""
    seen = set()
    stack = list(funcs)
    while stack:
        func = stack.pop()
        if id(func) in seen or not hasattr(func, '__code__'):
            continue
        seen.add(id(func))
        cells = closure_map(func)
        if name in cells:
            return cells[name].cell_contents
        for cell in cells.values():
            try:
                value = cell.cell_contents
            except ValueError:
                continue
            if callable(value):
                stack.append(value)
    raise KeyError(name)


def get_binding(app, key, *, requires=None):
    """Find the handler bound to ``key`` whose closure captures ``requires``."""
    wanted = KEY_ALIASES.get(key, key)
    required = set(requires or ())
    for binding in app.key_bindings.bindings:
        if wanted not in binding.keys:
            continue
        if required.issubset(closure_map(binding.handler)):
            return binding.handler
    raise AssertionError(f"Binding for {key!r} with closures {sorted(required)} not found")


def dummy_event(data='', exits=None):
    def _exit():
        if exits is not None:
            exits.append(True)
    return SimpleNamespace(data=data, app=SimpleNamespace(exit=_exit))


def fragments_text(fragments):
    return ''.join(text for _style, text in fragments)


__all__ = [
    'closure_map',
    'closure_value',
    'find_closure_value',
    'get_binding',
    'dummy_event',
    'fragments_text',
]
