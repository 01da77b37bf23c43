"""Shared test helpers for ralph_loop."""

import json
import os
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

sys.path.insert(0, str(PROJECT_ROOT))
import ralph_loop


def make_project(tmp_path):
    """Create a minimal project directory with .claude/."""
    dot_claude = tmp_path / ".claude"
    dot_claude.mkdir(parents=True)
    return tmp_path, dot_claude


def my_session():
    """Session key the CLI sees when run as a direct child of this process."""
    return str(os.getpid())


def state_file(dot_claude, session=None):
    return dot_claude / f"ralph-loop.{session or my_session()}.local.md"


def state_files(dot_claude):
    return sorted(
        p.name for p in dot_claude.iterdir()
        if p.name.startswith("ralph-loop.") and p.name.endswith(".local.md")
    )


def make_state_content(iteration=1, max_iterations=10, promise="IMPLEMENTED", prompt="Test prompt"):
    return (
        "---\n"
        "active: true\n"
        f"iteration: {iteration}\n"
        f"max_iterations: {max_iterations}\n"
        f'completion_promise: "{promise}"\n'
        'started_at: "2025-01-01T00:00:00Z"\n'
        "---\n"
        f"{prompt}\n"
    )


def write_state_file(dot_claude, content, session=None):
    path = state_file(dot_claude, session)
    path.write_text(content)
    return path


def make_transcript(tmp_path, text, role="assistant"):
    t = tmp_path / "transcript.jsonl"
    t.write_text(json.dumps({
        "role": role,
        "message": {"content": [{"type": "text", "text": text}]},
    }) + "\n")
    return str(t)


def clean_env():
    env = os.environ.copy()
    env["PYTHONPATH"] = str(PROJECT_ROOT)
    env["PYTHONIOENCODING"] = "utf-8"
    for name in (ralph_loop.SESSION_ENV, ralph_loop.PROJECT_DIR_ENV, ralph_loop.DEBUG_ENV):
        env.pop(name, None)
    return env


def run_main(cwd, args, stdin_text="", env=None):
    """Run ralph_loop.main() as a subprocess with given argv and stdin."""
    argv = ["ralph-loop"] + args
    code = f"import sys; sys.argv = {argv!r}; import ralph_loop; ralph_loop.main()"
    return subprocess.run(
        [sys.executable, "-c", code],
        input=stdin_text, capture_output=True, encoding="utf-8", cwd=str(cwd), env=env or clean_env(),
    )


def run_hook(cwd, event):
    """Run `ralph-loop hook` with a JSON event on stdin."""
    return run_main(cwd, ["hook"], json.dumps(event))


class MemoryStateStore(ralph_loop.StateStore):
    """Dict-backed store for exercising the loop logic without files."""

    def __init__(self, records=None):
        self.records = dict(records or {})

    def get(self, session):
        return self.records.get(session)

    def put(self, session, text):
        self.records[session] = text

    def delete(self, session):
        self.records.pop(session, None)

    def list_keys(self):
        return sorted(self.records)
