def test_structure_exists():
    # Basic smoke test to ensure key modules exist
    import importlib

    assert importlib.import_module("gdbcopilot")
    assert importlib.import_module("gdbcopilot.core.orchestrator")
    assert importlib.import_module("gdbcopilot.core.parser")
    assert importlib.import_module("gdbcopilot.backends.gdb_subprocess")
    assert importlib.import_module("gdbcopilot.llm.providers")
    assert importlib.import_module("gdbcopilot.llm.resilience")
    assert importlib.import_module("gdbcopilot.llm.cache")
    assert importlib.import_module("gdbcopilot.llm.context")
    assert importlib.import_module("gdbweb.app.main")
