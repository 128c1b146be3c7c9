import io
import sys
import tarfile
import textwrap
from pathlib import Path

import pytest

from progmeta.invoker import BuildInvoker
from progmeta.materializer import SourceMaterializer
from progmeta.orchestrator import BuildOrchestrator
from progmeta.pipeline import BuildPipeline
from progmeta.store import InMemoryProgramStore


# Stand-in for `docker build`: same argv shape, behaviour picked by a
# BUILD_MODE file in the source tree.
FAKE_BUILD_TOOL = textwrap.dedent(
    '''
    import sys
    import time
    from pathlib import Path

    args = sys.argv[1:]
    output = None
    image = None
    for i, arg in enumerate(args):
        if arg.startswith("--output="):
            output = Path(arg.split("=", 1)[1])
        if arg == "--build-arg":
            image = args[i + 1]
    source = Path(args[-1])

    mode_file = source / "BUILD_MODE"
    mode = mode_file.read_text().strip() if mode_file.exists() else "ok"

    print(f"Compiling {source.name}", flush=True)
    sys.stderr.write(f"build-arg: {image or 'none'}\\n")
    sys.stderr.flush()

    if mode == "fail":
        sys.stderr.write("error: could not compile `program`\\n")
        sys.exit(101)

    if mode == "noisy":
        for i in range(2000):
            print(f"line {i}", flush=True)

    if mode == "utf8split":
        sys.stdout.buffer.write(b"h\\xc3")
        sys.stdout.buffer.flush()
        time.sleep(0.05)
        sys.stdout.buffer.write(b"\\xa9llo\\n")
        sys.stdout.buffer.flush()

    if mode == "badutf8":
        sys.stdout.buffer.write(b"\\xff\\xfe\\n")
        sys.stdout.buffer.flush()

    output.mkdir(parents=True, exist_ok=True)
    if mode == "none":
        sys.exit(0)

    lib = source / "src" / "lib.rs"
    payload = lib.read_bytes() if lib.exists() else b""
    (output / "program.wasm").write_bytes(b"\\0asm" + payload)
    if mode == "multiple":
        (output / "other.wasm").write_bytes(b"\\0asm")
    print("Finished", flush=True)
    '''
)


def cargo_toml(name: str = "my-program", version: str = "0.1.0", program: str = "") -> str:
    """Render a Cargo.toml with an optional [package.metadata.entropy-program] body."""
    text = f'[package]\nname = "{name}"\nversion = "{version}"\nedition = "2021"\n'
    if program:
        text += "\n[package.metadata.entropy-program]\n" + textwrap.dedent(program)
    return text


def make_tar(files: dict[str, str | bytes], compress: bool = False) -> bytes:
    """Build an in-memory tar archive from {path: content}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if compress else "w") as archive:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def program_tree(mode: str = "ok", lib: str = "pub fn run() {}\n", **cargo) -> dict[str, str]:
    """Files of a buildable source tree for the fake build tool."""
    files = {
        "Cargo.toml": cargo_toml(**cargo),
        "src/lib.rs": lib,
        "Dockerfile": "FROM scratch\n",
    }
    if mode != "ok":
        files["BUILD_MODE"] = mode
    return files


@pytest.fixture
def fake_build_command(tmp_path) -> list[str]:
    script = tmp_path / "fake_build_tool.py"
    script.write_text(FAKE_BUILD_TOOL)
    return [sys.executable, str(script)]


@pytest.fixture
def store() -> InMemoryProgramStore:
    return InMemoryProgramStore()


@pytest.fixture
def work_root(tmp_path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def pipeline(store, fake_build_command, work_root) -> BuildPipeline:
    return BuildPipeline(
        store=store,
        materializer=SourceMaterializer(work_root=work_root, fetch_timeout=60),
        invoker=BuildInvoker(build_command=fake_build_command),
    )


@pytest.fixture
def orchestrator(pipeline):
    orch = BuildOrchestrator(pipeline, capacity=10, submit_timeout=5)
    orch.start()
    yield orch
    orch.shutdown(wait=True, timeout=30)
