import pytest

from workerbus.plugins import PluginHost, import_object, load_plugins


class Recording:
    def __init__(self):
        self.calls = []

    def initialize(self, env, phase):
        self.calls.append(("initialize", phase))
        return "ready"

    def on_worker_closed(self, kind, pid):
        self.calls.append(("closed", kind, pid))


class Exploding:
    def initialize(self, env, phase):
        raise ValueError("bad plugin")

    def on_worker_closed(self, kind, pid):
        raise ValueError("bad plugin")


def test_hooks_are_isolated_and_tagged():
    good = Recording()
    host = PluginHost({"bad": Exploding(), "bare": object(), "good": good})
    results = host.initialize(object(), "main")
    by_name = {result.plugin: result for result in results}

    assert [result.plugin for result in results] == ["bad", "bare", "good"]
    assert by_name["bad"].present and isinstance(by_name["bad"].error, ValueError)
    assert not by_name["bad"].ok
    assert not by_name["bare"].present
    assert by_name["good"].ok and by_name["good"].value == "ready"
    assert good.calls == [("initialize", "main")]


def test_worker_closed_reaches_every_plugin():
    first, second = Recording(), Recording()
    host = PluginHost({"first": first, "broken": Exploding(), "second": second})
    host.on_worker_closed("http-worker", 4242)
    assert first.calls == [("closed", "http-worker", 4242)]
    assert second.calls == [("closed", "http-worker", 4242)]


def test_unknown_hook_is_a_programming_error():
    with pytest.raises(ValueError):
        PluginHost({}).call_hook("on_something_else")


def test_import_object():
    assert import_object("os.path:join") is __import__("os").path.join
    assert import_object("os") is __import__("os")


def test_load_plugins_skips_broken_entries():
    plugins = load_plugins(
        {"paths": "os.path", "missing": "no_such_module_here", "attr": "os:nope"}
    )
    assert list(plugins) == ["paths"]
