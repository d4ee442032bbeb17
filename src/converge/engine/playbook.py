"""
Converge Playbook Model and Parser

Immutable Play/Task/Handler definitions and a YAML parser that builds them.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import yaml

from converge.engine.errors import ParseError, UnsupportedFeatureError


logger = logging.getLogger(__name__)


# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'when', 'loop', 'with_items', 'with_list', 'with_dict',
    'loop_control', 'delegate_to', 'run_once', 'tags', 'register', 'notify',
    'ignore_errors', 'changed_when', 'failed_when', 'args', 'vars', 'listen',
}

# Keywords recognized but not implemented
UNSUPPORTED_TASK_KEYS = {
    'block': "Flatten the block into individual tasks",
    'rescue': "Use ignore_errors and conditionals on registered results",
    'always': "Move the tasks after the failing task",
    'include': "Inline the included tasks",
    'include_tasks': "Inline the included tasks",
    'import_tasks': "Inline the imported tasks",
    'include_role': "Inline the role's tasks",
    'import_role': "Inline the role's tasks",
    'async': "Run the task synchronously",
    'poll': "Run the task synchronously",
    'until': "Retry the run instead",
    'retries': "Retry the run instead",
    'delegate_facts': "Use set_fact on the delegated host's play",
    'local_action': "Use delegate_to: localhost",
    'become': "Connect as the required user",
}

UNSUPPORTED_PLAY_KEYS = {
    'roles': "Inline the role's tasks into the play",
    'import_playbook': "Pass the playbooks separately on the command line",
    'serial': None,
    'strategy': None,
    'become': "Connect as the required user",
}

# Modules whose string argument is a command line rather than k=v pairs
FREE_FORM_MODULES = {'command', 'shell', 'meta'}

# k=v options that may be mixed into a free-form command line
FREE_FORM_OPTIONS = {'creates', 'removes', 'chdir'}

_KV_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


def _as_tuple(value: Any) -> Tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _as_tags(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(t.strip() for t in value.split(',') if t.strip())
    return frozenset(str(t) for t in value)


@dataclass(frozen=True)
class Task:
    """A single declared unit of desired state."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    when: Tuple[Any, ...] = ()
    loop: Any = None
    loop_var: str = "item"
    index_var: Optional[str] = None
    delegate_to: Optional[str] = None
    run_once: bool = False
    tags: FrozenSet[str] = frozenset()
    register: Optional[str] = None
    notify: Tuple[str, ...] = ()
    ignore_errors: bool = False
    changed_when: Optional[Any] = None
    failed_when: Optional[Any] = None
    vars: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'when', _as_tuple(self.when))
        object.__setattr__(self, 'tags', _as_tags(self.tags))
        object.__setattr__(self, 'notify', tuple(str(n) for n in _as_tuple(self.notify)))
        object.__setattr__(self, 'args', dict(self.args or {}))
        object.__setattr__(self, 'vars', dict(self.vars or {}))

    @property
    def has_loop(self) -> bool:
        return self.loop is not None

    @property
    def is_flush_point(self) -> bool:
        return (
            self.module.rsplit('.', 1)[-1] == 'meta'
            and str(self.args.get('_raw_params', '')).strip() == 'flush_handlers'
        )

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass(frozen=True)
class Handler(Task):
    """A task that only runs when notified by name or listen topic."""

    listen: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(self, 'listen', tuple(str(t) for t in _as_tuple(self.listen)))

    def __repr__(self) -> str:
        return f"Handler(name={self.name!r}, module={self.module!r})"


@dataclass(frozen=True)
class Play:
    """A host pattern paired with an ordered list of tasks."""

    name: str
    hosts: str
    tasks: Tuple[Task, ...] = ()
    handlers: Tuple[Handler, ...] = ()
    vars: Dict[str, Any] = field(default_factory=dict)
    tags: FrozenSet[str] = frozenset()
    force_handlers: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, 'tasks', tuple(self.tasks))
        object.__setattr__(self, 'handlers', tuple(self.handlers))
        object.__setattr__(self, 'tags', _as_tags(self.tags))
        object.__setattr__(self, 'vars', dict(self.vars or {}))

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


class PlaybookParser:
    """
    Parse YAML playbooks into Play and Task objects.

    Validates against the supported keyword set and raises errors for
    unsupported features.
    """

    def __init__(self, playbook_path: Union[str, Path, None] = None):
        self.playbook_path = Path(playbook_path) if playbook_path else None
        self._base_dir = self.playbook_path.parent if self.playbook_path else Path.cwd()

    @property
    def _source(self) -> Optional[str]:
        return str(self.playbook_path) if self.playbook_path else None

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If the playbook uses unsupported features
        """
        if self.playbook_path is None:
            raise ParseError("No playbook path given")
        if not self.playbook_path.exists():
            raise ParseError(f"Playbook not found: {self.playbook_path}", file_path=self._source)

        content = self.playbook_path.read_text(encoding='utf-8')
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            line = None
            mark = getattr(e, 'problem_mark', None)
            if mark is not None:
                line = mark.line + 1
            raise ParseError(f"YAML syntax error: {e}", file_path=self._source, line=line)

        plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                plays.extend(doc)
            else:
                plays.append(doc)
        return self.parse_data(plays)

    def parse_data(self, data: Any) -> List[Play]:
        """Build plays from already-loaded YAML data (a list of play mappings)."""
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise ParseError(
                f"A playbook must be a list of plays, got {type(data).__name__}",
                file_path=self._source,
            )
        plays = []
        for play_data in data:
            if not isinstance(play_data, dict):
                raise ParseError(
                    f"A play must be a mapping, got {type(play_data).__name__}",
                    file_path=self._source,
                )
            plays.append(self._parse_play(play_data))
        return plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        for key, suggestion in UNSUPPORTED_PLAY_KEYS.items():
            if key in data:
                raise UnsupportedFeatureError(f"'{key}' in plays", suggestion=suggestion)

        if 'hosts' not in data:
            raise ParseError("Play missing required 'hosts' field", file_path=self._source)
        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ':'.join(str(h) for h in hosts)

        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            raise ParseError(
                f"'vars' must be a dictionary, got {type(play_vars).__name__}",
                file_path=self._source,
            )
        play_vars = dict(play_vars)
        for vars_file in _as_tuple(data.get('vars_files')):
            play_vars.update(self._load_vars_file(vars_file))

        if data.get('gather_facts'):
            logger.warning("gather_facts is not supported and is ignored")

        tasks: List[Task] = []
        for section in ('pre_tasks', 'tasks', 'post_tasks'):
            for task_data in data.get(section) or []:
                tasks.append(self._parse_task(task_data))

        handlers = [self._parse_task(h, handler=True) for h in data.get('handlers') or []]

        return Play(
            name=str(data.get('name') or hosts),
            hosts=str(hosts),
            tasks=tasks,
            handlers=handlers,
            vars=play_vars,
            tags=data.get('tags'),
            force_handlers=bool(data.get('force_handlers', False)),
        )

    def _load_vars_file(self, vars_file: str) -> Dict[str, Any]:
        vars_path = self._base_dir / vars_file
        if not vars_path.exists():
            raise ParseError(f"vars_file not found: {vars_file}", file_path=self._source)
        try:
            vars_data = yaml.safe_load(vars_path.read_text(encoding='utf-8')) or {}
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(vars_path))
        if not isinstance(vars_data, dict):
            raise ParseError("vars_file must contain a mapping", file_path=str(vars_path))
        return vars_data

    def _parse_task(self, data: Any, handler: bool = False) -> Task:
        """Parse a single task (or handler) from YAML data."""
        if not isinstance(data, dict):
            raise ParseError(f"A task must be a mapping, got {type(data).__name__}", file_path=self._source)

        for key, suggestion in UNSUPPORTED_TASK_KEYS.items():
            if key in data:
                raise UnsupportedFeatureError(f"'{key}' in tasks", suggestion=suggestion)

        module_keys = [k for k in data if k not in TASK_KEYWORDS]
        if not module_keys:
            raise ParseError(f"Task has no module: {list(data.keys())}", file_path=self._source)
        if len(module_keys) > 1:
            raise ParseError(
                f"Task names more than one module: {', '.join(map(str, module_keys))}",
                file_path=self._source,
            )
        module_name = str(module_keys[0])
        args = self._normalize_args(module_name, data[module_name])
        extra_args = data.get('args') or {}
        if not isinstance(extra_args, dict):
            raise ParseError("'args' must be a dictionary", file_path=self._source)
        args.update(extra_args)

        loop = None
        for key in ('loop', 'with_items', 'with_list', 'with_dict'):
            if key in data:
                loop = data[key]
                break

        loop_control = data.get('loop_control') or {}
        if not isinstance(loop_control, dict):
            raise ParseError("'loop_control' must be a dictionary", file_path=self._source)

        kwargs: Dict[str, Any] = dict(
            name=str(data.get('name') or module_name),
            module=module_name,
            args=args,
            when=data.get('when'),
            loop=loop,
            loop_var=loop_control.get('loop_var', 'item'),
            index_var=loop_control.get('index_var'),
            delegate_to=data.get('delegate_to'),
            run_once=bool(data.get('run_once', False)),
            tags=data.get('tags'),
            register=data.get('register'),
            notify=data.get('notify'),
            ignore_errors=bool(data.get('ignore_errors', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            vars=data.get('vars') or {},
        )
        if handler:
            return Handler(listen=data.get('listen'), **kwargs)
        if 'listen' in data:
            raise ParseError("'listen' is only valid on handlers", file_path=self._source)
        return Task(**kwargs)

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}
        if isinstance(args, dict):
            return dict(args)

        text = str(args)
        if module_name.rsplit('.', 1)[-1] in FREE_FORM_MODULES:
            return self._parse_free_form(text)

        parsed = {}
        for match in _KV_PATTERN.finditer(text):
            value = match.group(2)
            if value is None:
                value = match.group(3)
            if value is None:
                value = match.group(4)
            parsed[match.group(1)] = value
        if not parsed:
            parsed['_raw_params'] = text
        return parsed

    def _parse_free_form(self, text: str) -> Dict[str, Any]:
        """Split ``creates=``/``removes=``/``chdir=`` options off a command line."""
        try:
            words = shlex.split(text, posix=False)
        except ValueError:
            return {'_raw_params': text}
        options: Dict[str, Any] = {}
        command: List[str] = []
        for word in words:
            key, sep, value = word.partition('=')
            if sep and key in FREE_FORM_OPTIONS:
                options[key] = value.strip('"\'')
            else:
                command.append(word)
        options['_raw_params'] = ' '.join(command)
        return options


def load_playbook(path: Union[str, Path]) -> List[Play]:
    """Convenience function to parse a playbook file."""
    return PlaybookParser(path).parse()
