"""Tests for BuildInvoker streaming and decoding."""

import pytest

from progmeta.errors import InvocationFailed
from progmeta.invoker import BuildInvoker
from progmeta.schemas import StdErrChunk, StdOutChunk


def make_source(tmp_path, mode="ok"):
    source = tmp_path / "source"
    (source / "src").mkdir(parents=True)
    (source / "src" / "lib.rs").write_text("pub fn run() {}\n")
    if mode != "ok":
        (source / "BUILD_MODE").write_text(mode)
    output = tmp_path / "output"
    output.mkdir()
    return source, output


class Collector:
    """on_chunk callback that records events and optionally stops accepting."""

    def __init__(self, accept_limit=None):
        self.events = []
        self.accept_limit = accept_limit

    def __call__(self, event):
        if self.accept_limit is not None and len(self.events) >= self.accept_limit:
            return False
        self.events.append(event)
        return True

    def text(self, kind):
        return "".join(e.text for e in self.events if isinstance(e, kind))


def test_command_for():
    """The build image is passed as a build argument before the output flag."""
    invoker = BuildInvoker(build_command=["docker", "build"])
    assert invoker.command_for("/src", "/out") == ["docker", "build", "--output=/out", "/src"]
    assert invoker.command_for("/src", "/out", "img:1") == [
        "docker", "build", "--build-arg", "IMAGE=img:1", "--output=/out", "/src",
    ]


def test_streams_stdout_and_stderr(tmp_path, fake_build_command):
    """Both streams are forwarded as chunk events."""
    source, output = make_source(tmp_path)
    collector = Collector()
    result = BuildInvoker(build_command=fake_build_command).run(source, output, collector)

    assert result.success
    assert "Compiling source" in collector.text(StdOutChunk)
    assert "Finished" in collector.text(StdOutChunk)
    assert "build-arg: none" in collector.text(StdErrChunk)
    assert result.forwarded == len(collector.events)
    assert result.dropped == 0
    assert (output / "program.wasm").exists()


def test_passes_build_image(tmp_path, fake_build_command):
    """The manifest's build image reaches the build tool."""
    source, output = make_source(tmp_path)
    collector = Collector()
    BuildInvoker(build_command=fake_build_command).run(
        source, output, collector, build_image="builder:2"
    )
    assert "build-arg: IMAGE=builder:2" in collector.text(StdErrChunk)


def test_nonzero_exit_is_returned(tmp_path, fake_build_command):
    """A failing exit is returned with the stderr tail."""
    source, output = make_source(tmp_path, "fail")
    result = BuildInvoker(build_command=fake_build_command).run(source, output, Collector())

    assert not result.success
    assert result.returncode == 101
    assert "could not compile" in result.stderr_tail


def test_stderr_tail_is_bounded(tmp_path, fake_build_command):
    """The stderr tail keeps only the last characters."""
    source, output = make_source(tmp_path, "fail")
    invoker = BuildInvoker(build_command=fake_build_command, stderr_tail_chars=20)
    result = invoker.run(source, output, Collector())
    assert len(result.stderr_tail) <= 20
    assert result.stderr_tail.endswith("`program`\n")


def test_multibyte_character_split_across_reads(tmp_path, fake_build_command):
    """A character split between reads is decoded whole."""
    source, output = make_source(tmp_path, "utf8split")
    collector = Collector()
    result = BuildInvoker(build_command=fake_build_command).run(source, output, collector)

    assert "héllo\n" in collector.text(StdOutChunk)
    assert result.malformed == 0


def test_invalid_utf8_is_dropped(tmp_path, fake_build_command):
    """Undecodable output is counted and skipped."""
    source, output = make_source(tmp_path, "badutf8")
    collector = Collector()
    result = BuildInvoker(build_command=fake_build_command).run(source, output, collector)

    assert result.success
    assert result.malformed >= 1
    assert "Finished" in collector.text(StdOutChunk)


def test_refused_chunks_keep_draining(tmp_path, fake_build_command):
    """The tool runs to completion after the callback stops accepting."""
    source, output = make_source(tmp_path, "noisy")
    collector = Collector(accept_limit=1)
    result = BuildInvoker(build_command=fake_build_command).run(source, output, collector)

    assert result.success
    assert len(collector.events) == 1
    assert result.forwarded == 1
    assert result.dropped >= 1
    # The tool ran to completion despite nobody listening
    assert (output / "program.wasm").exists()


def test_missing_build_tool(tmp_path):
    """A missing executable raises InvocationFailed."""
    source, output = make_source(tmp_path)
    invoker = BuildInvoker(build_command=["definitely-not-a-build-tool-xyz"])
    with pytest.raises(InvocationFailed, match="Cannot start build tool"):
        invoker.run(source, output, Collector())
