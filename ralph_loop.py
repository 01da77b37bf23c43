#!/usr/bin/env python3
"""Ralph loop for Claude Code.

Keeps Claude working on one goal across turns. A stop hook re-sends the goal
after each turn until Claude outputs <promise>TOKEN</promise> or the iteration
budget runs out.

Usage:
    ralph-loop [-n N] [-p TOKEN] PROMPT...   Start a loop (reads stdin if no PROMPT)
    ralph-loop hook                          Stop hook handler (called by Claude Code)
    ralph-loop cancel [--all]                Cancel the running loop
    ralph-loop status                        List loop state files
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import argparse
import json
import logging
import os
import re
import sys

import yaml

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_COMPLETION_PROMISE = 'IMPLEMENTED'

STATE_PREFIX = 'ralph-loop.'
STATE_SUFFIX = '.local.md'

SESSION_ENV = 'RALPH_LOOP_SESSION'
DEBUG_ENV = 'RALPH_LOOP_DEBUG'
PROJECT_DIR_ENV = 'CLAUDE_PROJECT_DIR'

SESSION_RE = re.compile(r'[A-Za-z0-9_-]+')
HEADER_RE = re.compile(r'\A---[ \t]*\n(.*?)^---[ \t]*(?:\n|\Z)', re.DOTALL | re.MULTILINE)

# Hook outcomes.
NO_LOOP = 'no_loop'
CORRUPTED = 'corrupted'
COMPLETED = 'completed'
BUDGET_EXHAUSTED = 'budget_exhausted'
CONTINUE = 'continue'

ACTIVATION_MESSAGE = """\
Ralph loop activated (iteration 1 of {max_iterations}).

When you try to stop, the same prompt will be fed back to you. Your previous \
work stays in the files and git history, so each iteration can build on it.

To finish the loop, output exactly:

    <promise>{completion_promise}</promise>

ONLY output this when the statement is completely and unequivocally TRUE. Do \
not output a false promise to escape the loop, even if you think you are stuck.

## Task

{goal}
"""


class UsageError(Exception):
    """A loop cannot be started with the given arguments."""


class CorruptedStateError(ValueError):
    """A state file exists but cannot be trusted."""


@dataclass
class LoopState:
    iteration: int
    max_iterations: int
    completion_promise: str
    started_at: str
    goal: str
    active: bool = True


@dataclass
class Decision:
    outcome: str
    message: str = ''
    state: Optional[LoopState] = None


def main():
    configure_logging()
    args = sys.argv[1:]
    if args and args[0] == 'hook':
        hook()
    elif args and args[0] == 'cancel':
        cancel(args[1:])
    elif args and args[0] == 'status':
        status(args[1:])
    else:
        start(args)


def configure_logging():
    level = logging.DEBUG if os.environ.get(DEBUG_ENV) else logging.WARNING
    logging.basicConfig(level=level, format='ralph-loop: %(levelname)s: %(message)s')


# Commands.

def start(argv):
    parser = argparse.ArgumentParser(
        prog='ralph-loop',
        description='Start a Ralph loop: re-prompt Claude with PROMPT after '
                    'every turn until it outputs <promise>TOKEN</promise>.',
        epilog='examples:\n'
               '  ralph-loop Fix the flaky login test\n'
               '  ralph-loop -n 20 -p DONE "Port the parser to the new API"\n'
               '  cat task.md | ralph-loop\n\n'
               'Put -- before a prompt with words starting with "-":\n'
               '  ralph-loop -- Fix the -v flag\n\n'
               'Cancel a running loop with: ralph-loop cancel',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('prompt', nargs='*', help='the goal (read from stdin if omitted)')
    parser.add_argument(
        '-n', '--max-iterations', type=int, default=DEFAULT_MAX_ITERATIONS,
        help=f'iteration budget (default: {DEFAULT_MAX_ITERATIONS})',
    )
    parser.add_argument(
        '-p', '--completion-promise', default=DEFAULT_COMPLETION_PROMISE,
        help=f'completion marker (default: {DEFAULT_COMPLETION_PROMISE})',
    )
    parser.add_argument('--session', help='explicit session id (default: parent pid)')
    args = parser.parse_args(argv)

    goal = ' '.join(args.prompt) if args.prompt else read_stdin_goal()
    store = FileStateStore(dot_claude_dir(fallback=True))
    try:
        state = create_loop(
            store, args.session or session_id(), goal,
            max_iterations=args.max_iterations,
            completion_promise=args.completion_promise,
        )
    except UsageError as e:
        parser.error(str(e))

    print(ACTIVATION_MESSAGE.format(
        max_iterations=state.max_iterations,
        completion_promise=state.completion_promise,
        goal=state.goal,
    ))


def hook():
    event = read_hook_event()
    event_name = event.get('hook_event_name', 'Stop')
    if event_name != 'Stop':
        logger.debug('ignoring %s event', event_name)
        return

    directory = dot_claude_dir()
    if directory is None:
        return

    decision = evaluate_turn(FileStateStore(directory), session_id(), event)
    if decision.outcome == CONTINUE:
        print(json.dumps({
            'decision': 'block',
            'reason': decision.state.goal,
            'systemMessage': decision.message,
        }))
    elif decision.outcome == CORRUPTED:
        print(decision.message, file=sys.stderr)
    elif decision.message:
        print(decision.message)


def cancel(argv):
    parser = argparse.ArgumentParser(prog='ralph-loop cancel', description='Cancel a running Ralph loop.')
    parser.add_argument('--all', action='store_true', help='cancel every loop in this project')
    parser.add_argument('--session', help='explicit session id (default: parent pid)')
    args = parser.parse_args(argv)
    if args.session and not SESSION_RE.fullmatch(args.session):
        parser.error(f'invalid session id: {args.session!r}')

    directory = dot_claude_dir()
    if directory is None:
        print('No active Ralph loop found.')
        return
    store = FileStateStore(directory)
    sessions = store.list_keys() if args.all else [args.session or session_id()]

    cancelled = 0
    for session in sessions:
        iteration = cancel_loop(store, session)
        if iteration is None:
            continue
        cancelled += 1
        if iteration:
            print(f'Cancelled Ralph loop {session} (was at iteration {iteration}).')
        else:
            print(f'Cancelled Ralph loop {session} (state was corrupted).')
    if not cancelled:
        print('No active Ralph loop found.')


def status(argv):
    parser = argparse.ArgumentParser(prog='ralph-loop status', description='List Ralph loops in this project.')
    parser.parse_args(argv)

    directory = dot_claude_dir()
    store = FileStateStore(directory) if directory else None
    sessions = store.list_keys() if store else []
    if not sessions:
        print('No active Ralph loops.')
        return

    for session in sessions:
        owner = 'alive' if process_alive(session) else 'stale'
        try:
            state = decode_state(store.get(session))
        except CorruptedStateError as e:
            print(f'{session} ({owner}): corrupted ({e})')
            continue
        print(
            f'{session} ({owner}): iteration {state.iteration}/{state.max_iterations}, '
            f'promise <promise>{state.completion_promise}</promise>, '
            f'started {state.started_at}'
        )


# Loop lifecycle.

def create_loop(store, session, goal, max_iterations=DEFAULT_MAX_ITERATIONS,
                completion_promise=DEFAULT_COMPLETION_PROMISE, is_alive=None, now=None):
    """Reclaim stale loops, then write a fresh state record for `session`."""
    if not goal or not goal.strip():
        raise UsageError('No prompt provided. Pass the goal as arguments or on stdin.')
    if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1:
        raise UsageError(f'--max-iterations must be a positive integer, got {max_iterations!r}')
    if not completion_promise:
        raise UsageError('--completion-promise must not be empty')
    if not SESSION_RE.fullmatch(session):
        raise UsageError(f'invalid session id: {session!r}')

    reclaim_stale(store, is_alive or process_alive)

    now = now or datetime.now(timezone.utc)
    state = LoopState(
        iteration=1,
        max_iterations=max_iterations,
        completion_promise=completion_promise,
        started_at=now.strftime('%Y-%m-%dT%H:%M:%SZ'),
        goal=goal,
    )
    store.put(session, encode_state(state))
    logger.debug('started loop %s (max %d iterations)', session, max_iterations)
    return state


def reclaim_stale(store, is_alive=None):
    """Delete state left behind by sessions that are no longer running."""
    is_alive = is_alive or process_alive
    reclaimed = []
    for session in store.list_keys():
        if not is_alive(session):
            store.delete(session)
            reclaimed.append(session)
            logger.info('reclaimed stale loop state for session %s', session)
    return reclaimed


def evaluate_turn(store, session, event):
    """Decide whether the turn that just finished ends the loop."""
    text = store.get(session)
    if text is None:
        return Decision(NO_LOOP)

    try:
        state = decode_state(text)
    except CorruptedStateError as e:
        # Record stays on disk as-is.
        return Decision(CORRUPTED, (
            f'⚠️  Ralph loop: state file corrupted ({e}). '
            'Stopping; cancel it with `ralph-loop cancel` and start a fresh loop.'
        ))

    tag = f'<promise>{state.completion_promise}</promise>'
    if find_promise(last_assistant_text(event), state.completion_promise):
        store.delete(session)
        return Decision(COMPLETED, f'✅ Ralph loop: Detected {tag}. Loop complete.', state)

    if state.iteration >= state.max_iterations:
        store.delete(session)
        return Decision(
            BUDGET_EXHAUSTED,
            f'🛑 Ralph loop: Max iterations ({state.max_iterations}) reached.',
            state,
        )

    state = replace(state, iteration=state.iteration + 1)
    store.put(session, encode_state(state))
    return Decision(CONTINUE, (
        f'🔄 Ralph iteration {state.iteration} of {state.max_iterations} | '
        f'To stop: output {tag} (ONLY when the statement is TRUE - do not lie to exit!)'
    ), state)


def cancel_loop(store, session):
    """Delete the loop for `session`.

    Returns the iteration it was at, 0 if the record was unreadable, or None
    when there was no loop.
    """
    text = store.get(session)
    if text is None:
        return None
    store.delete(session)
    try:
        return decode_state(text).iteration
    except CorruptedStateError:
        return 0


def find_promise(text, completion_promise):
    """Check text for the exact <promise>...</promise> completion tag."""
    if not text or not completion_promise:
        return False
    return f'<promise>{completion_promise}</promise>' in text


# Session identity.

def session_id():
    """The session that owns the loop: RALPH_LOOP_SESSION, else the parent pid."""
    explicit = os.environ.get(SESSION_ENV)
    if explicit:
        if SESSION_RE.fullmatch(explicit):
            return explicit
        logger.warning('ignoring invalid %s=%r', SESSION_ENV, explicit)
    return str(os.getppid())


def process_alive(session):
    """Whether the process behind a numeric session id is still running.

    Non-numeric session handles cannot be checked and count as alive.
    """
    try:
        pid = int(session)
    except ValueError:
        return True
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except (ProcessLookupError, OverflowError):
        return False
    return True


# State file management.

def encode_state(state):
    header = (
        f'active: {"true" if state.active else "false"}\n'
        f'iteration: {state.iteration}\n'
        f'max_iterations: {state.max_iterations}\n'
        f'completion_promise: {json.dumps(state.completion_promise, ensure_ascii=False)}\n'
        f'started_at: {json.dumps(state.started_at, ensure_ascii=False)}\n'
    )
    return f'---\n{header}---\n{state.goal}\n'


def decode_state(text):
    m = HEADER_RE.match(text)
    if not m:
        raise CorruptedStateError('missing or unterminated header')
    try:
        header = yaml.safe_load(m.group(1)) or {}
    except yaml.YAMLError as e:
        raise CorruptedStateError(f'unparseable header: {e}') from e
    if not isinstance(header, dict):
        raise CorruptedStateError('header is not a mapping')

    iteration = _positive_int(header, 'iteration')
    max_iterations = _positive_int(header, 'max_iterations')

    goal = text[m.end():]
    if goal.endswith('\n'):
        goal = goal[:-1]

    promise = header.get('completion_promise')
    started_at = header.get('started_at')
    if isinstance(started_at, datetime):
        started_at = started_at.strftime('%Y-%m-%dT%H:%M:%SZ')
    return LoopState(
        iteration=iteration,
        max_iterations=max_iterations,
        completion_promise=None if promise is None else str(promise),
        started_at='' if started_at is None else str(started_at),
        goal=goal,
        active=header.get('active', True) is not False,
    )


def _positive_int(header, key):
    value = header.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise CorruptedStateError(f'{key} is {value!r}, expected a positive integer')
    return value


class StateStore:
    """Loop state records keyed by session id."""

    def get(self, session):
        raise NotImplementedError

    def put(self, session, text):
        raise NotImplementedError

    def delete(self, session):
        raise NotImplementedError

    def list_keys(self):
        raise NotImplementedError


class FileStateStore(StateStore):
    """One `ralph-loop.<session>.local.md` file per loop in a .claude directory."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def path(self, session):
        if not SESSION_RE.fullmatch(session):
            raise ValueError(f'invalid session id: {session!r}')
        return self.directory / f'{STATE_PREFIX}{session}{STATE_SUFFIX}'

    def get(self, session):
        path = self.path(session)
        if path.exists():
            return path.read_text(encoding='utf-8')

    def put(self, session, text):
        path = self.path(session)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f'{path.name}.tmp')
        tmp.write_text(text, encoding='utf-8')
        os.replace(tmp, path)

    def delete(self, session):
        self.path(session).unlink(missing_ok=True)

    def list_keys(self):
        if not self.directory.is_dir():
            return []
        keys = []
        for p in sorted(self.directory.glob(f'{STATE_PREFIX}*{STATE_SUFFIX}')):
            key = p.name[len(STATE_PREFIX):-len(STATE_SUFFIX)]
            if SESSION_RE.fullmatch(key):
                keys.append(key)
        return keys


def dot_claude_dir(fallback=False):
    """Find the project's .claude directory.

    Uses $CLAUDE_PROJECT_DIR when Claude Code sets it, otherwise the nearest
    .claude above the cwd (not looking past the home directory, unless the
    cwd is home). When none exists, returns None, or with `fallback` the
    path where one should go.
    """
    project_dir = os.environ.get(PROJECT_DIR_ENV)
    if project_dir:
        candidates = [Path(project_dir)]
    else:
        candidates = []
        p = Path.cwd()
        for p in [p, *p.parents]:
            if p == Path.home():
                break
            candidates.append(p)
        # The cwd is home itself.
        if not candidates:
            candidates.append(Path.cwd())

    for p in candidates:
        dot_claude = p / '.claude'
        if dot_claude.is_dir():
            return dot_claude

    if fallback:
        return candidates[0] / '.claude'
    return None


# Hook input and transcript parsing.

def read_stdin_goal():
    if sys.stdin is None or sys.stdin.isatty():
        return ''
    return sys.stdin.read().rstrip('\n')


def read_hook_event():
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        event = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning('invalid hook input JSON: %s', e)
        return {}
    return event if isinstance(event, dict) else {}


def last_assistant_text(event):
    """Text of the most recent assistant message for this turn."""
    transcript_path = event.get('transcript_path')
    if transcript_path:
        try:
            for line in reverse_lines(transcript_path):
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug('skipping malformed transcript line')
                    continue
                if is_assistant_record(record):
                    return record_text(record)
        except OSError as e:
            logger.debug('cannot read transcript %s: %s', transcript_path, e)
    return event.get('last_assistant_message') or ''


def is_assistant_record(record):
    if not isinstance(record, dict):
        return False
    message = record.get('message')
    return (
        record.get('role') == 'assistant'
        or record.get('type') == 'assistant'
        or (isinstance(message, dict) and message.get('role') == 'assistant')
    )


def record_text(record):
    message = record.get('message')
    if isinstance(message, dict) and 'content' in message:
        content = message['content']
    else:
        content = record.get('content')

    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ''
    return '\n'.join(
        segment['text'] for segment in content
        if isinstance(segment, dict) and segment.get('type') == 'text'
        and isinstance(segment.get('text'), str)
    )


def reverse_lines(path, block_size=4096):
    """Yield lines from a file in reverse order."""
    size = os.path.getsize(path)
    if size == 0:
        return
    with open(path, 'rb') as f:
        remainder = b''
        pos = size
        while pos > 0:
            read_size = min(block_size, pos)
            pos -= read_size
            f.seek(pos)
            chunk = f.read(read_size) + remainder
            lines = chunk.split(b'\n')
            remainder = lines[0] if pos > 0 else b''
            start = 1 if pos > 0 else 0
            for line in reversed(lines[start:]):
                line = line.strip()
                if line:
                    yield line.decode('utf-8', errors='replace')
        if remainder.strip():
            yield remainder.strip().decode('utf-8', errors='replace')


if __name__ == '__main__':
    main()
