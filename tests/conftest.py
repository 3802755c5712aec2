"""Shared fixtures: fake executables and a throwaway Remotion build tree."""

import sys
import textwrap
from pathlib import Path

import pytest

HELLO_WORLD = """import { AbsoluteFill } from 'remotion'

export const compositionConfig = {
  id: 'HelloWorld',
  width: 1920,
  height: 1080,
  fps: 30,
  durationInFrames: 150,
}

const HelloWorld = () => <AbsoluteFill>Hello World</AbsoluteFill>

export default HelloWorld
"""

PLACEHOLDER_ROOT = """import { Composition, Folder } from 'remotion'

export const Root = () => {
  return (
    <Folder name="System">
      <Composition id="Placeholder" component={() => null} durationInFrames={150} fps={30} width={1920} height={1080} />
    </Folder>
  )
}
"""


@pytest.fixture
def make_script(tmp_path):
    """Write an executable Python script and return its path."""

    def _make(name: str, body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def build_dir(tmp_path):
    """A minimal Remotion project tree with a shared entry file."""
    root = tmp_path / "remotion"
    (root / "src").mkdir(parents=True)
    (root / "src" / "Root.tsx").write_text(PLACEHOLDER_ROOT)
    (root / "src" / "index.ts").write_text("import { registerRoot } from 'remotion'\n")
    return root


@pytest.fixture
def composition_source(tmp_path):
    path = tmp_path / "HelloWorld.tsx"
    path.write_text(HELLO_WORLD)
    return path
