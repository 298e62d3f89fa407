import io

from sessionkeeper.console import HELP_TEXT, ConsoleCommands


class _Recorder:
    def __init__(self):
        self.stops = 0
        self.pauses = 0

    def stop(self):
        self.stops += 1

    def toggle(self):
        self.pauses += 1
        return True

    def status(self):
        return "state=in_session"


def _console(recorder, stream=None):
    return ConsoleCommands(
        on_stop=recorder.stop,
        on_toggle_pause=recorder.toggle,
        on_status=recorder.status,
        stream=stream,
    )


def test_dispatch_commands(capsys):
    recorder = _Recorder()
    console = _console(recorder)

    assert console.dispatch("p\n") is True
    assert console.dispatch("S") is True
    assert console.dispatch("?") is True
    assert console.dispatch("x") is True
    assert recorder.pauses == 1
    assert recorder.stops == 0
    out = capsys.readouterr().out
    assert "state=in_session" in out
    assert HELP_TEXT in out

    assert console.dispatch("\n") is False
    assert recorder.stops == 1


def test_stream_loop_runs_until_enter():
    recorder = _Recorder()
    console = _console(recorder, stream=io.StringIO("p\np\n\ns\n"))
    assert console.start() is True
    console._thread.join(timeout=2.0)
    assert not console._thread.is_alive()
    assert recorder.pauses == 2
    assert recorder.stops == 1


def test_start_skips_non_interactive_stdin(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    recorder = _Recorder()
    assert _console(recorder).start() is False


def test_loop_without_stream_returns():
    recorder = _Recorder()
    console = _console(recorder)
    console._loop()
    assert recorder.stops == 0
