"""
Typed options, shared by the command line, `--set name=value` and YAML config files.
"""
from __future__ import annotations

import copy
import textwrap
from collections.abc import Callable
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from typing import TextIO

import ruamel.yaml

from tlsprobe import exceptions
from tlsprobe.utils import typecheck

unset = object()


class _Option:
    __slots__ = ("name", "typespec", "value", "_default", "choices", "help")

    def __init__(
        self,
        name: str,
        typespec: type | object,  # Optional[x] is not a type.
        default: Any,
        help: str,
        choices: Sequence[str] | None,
    ) -> None:
        typecheck.check_option_type(name, default, typespec)
        self.name = name
        self.typespec = typespec
        self._default = default
        self.value = unset
        self.help = " ".join(textwrap.dedent(help).split())
        self.choices = choices

    def __repr__(self):
        return f"{self.current()} [{self.typespec}]"

    @property
    def default(self):
        return copy.deepcopy(self._default)

    def current(self) -> Any:
        return self.default if self.value is unset else copy.deepcopy(self.value)

    def set(self, value: Any) -> None:
        typecheck.check_option_type(self.name, value, self.typespec)
        if self.choices is not None and value not in self.choices:
            raise exceptions.OptionsError(
                f"Invalid value for {self.name}: {value!r}. "
                f"Valid values are {', '.join(map(repr, self.choices))}."
            )
        self.value = value

    def reset(self) -> None:
        self.value = unset

    def has_changed(self) -> bool:
        return self.current() != self.default


def _parse_str(option: _Option, text: str | None) -> str | None:
    return text


def _parse_int(option: _Option, text: str | None) -> int | None:
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        raise exceptions.OptionsError(f"Not an integer: {text}") from None


def _parse_bool(option: _Option, text: str | None) -> bool:
    if text == "toggle":
        return not option.current()
    if text in (None, "", "true"):
        return True
    if text == "false":
        return False
    raise exceptions.OptionsError(
        'Boolean must be "true", "false", "toggle", '
        'or have the value omitted (a synonym for "true").'
    )


_PARSERS: dict[type, Callable[[_Option, str | None], Any]] = {
    str: _parse_str,
    int: _parse_int,
    bool: _parse_bool,
}


class OptManager:
    """
    Base class for option sets.

    Options are declared once with add_option and afterwards read and written
    as plain attributes. Reads return deep copies, so mutating a returned list
    never changes the option itself.
    """

    def __init__(self) -> None:
        # Attribute assignment is routed to update() once _options exists.
        self._options: dict[str, _Option] = {}

    def add_option(
        self,
        name: str,
        typespec: type | object,
        default: Any,
        help: str,
        choices: Sequence[str] | None = None,
    ) -> None:
        self._options[name] = _Option(name, typespec, default, help, choices)

    def __getattr__(self, attr):
        try:
            return self._options[attr].current()
        except KeyError:
            raise AttributeError(f"No such option: {attr}") from None

    def __setattr__(self, attr, value):
        if "_options" not in self.__dict__:
            super().__setattr__(attr, value)
        else:
            self.update(**{attr: value})

    def __deepcopy__(self, memodict=None):
        o = type(self).__new__(type(self))
        o.__dict__["_options"] = copy.deepcopy(self._options, memodict)
        return o

    def __contains__(self, name):
        return name in self._options

    def __repr__(self):
        values = ", ".join(f"{name}={o.current()!r}" for name, o in sorted(self.items()))
        return f"{type(self).__name__}({values})"

    def keys(self) -> set[str]:
        return set(self._options)

    def items(self):
        return self._options.items()

    def default(self, option: str) -> Any:
        return self._options[option].default

    def has_changed(self, option: str) -> bool:
        return self._options[option].has_changed()

    def reset(self) -> None:
        """
        Restore all defaults.
        """
        for o in self._options.values():
            o.reset()

    def update_known(self, **kwargs) -> dict[str, Any]:
        """
        Set every known option in kwargs and return the unknown ones.
        If any value is rejected, no option is changed.
        """
        unknown = {k: v for k, v in kwargs.items() if k not in self._options}
        snapshot = copy.deepcopy(self._options)
        try:
            for name, value in kwargs.items():
                if name not in unknown:
                    self._options[name].set(value)
        except (TypeError, exceptions.OptionsError):
            self.__dict__["_options"] = snapshot
            raise
        return unknown

    def update(self, **kwargs) -> None:
        unknown = self.update_known(**kwargs)
        if unknown:
            raise KeyError(f"Unknown options: {', '.join(unknown)}")

    def set(self, *specs: str) -> None:
        """
        Apply `name=value` assignments as given with `--set`. A bare `name`
        means "no value": true for booleans, None for optional options and
        an empty list for sequences.

        Raises OptionsError for unknown options and malformed values.
        """
        values: dict[str, list[str]] = {}
        for spec in specs:
            name, sep, value = spec.partition("=")
            values.setdefault(name, [])
            if sep:
                values[name].append(value)

        unknown = [name for name in values if name not in self._options]
        if unknown:
            raise exceptions.OptionsError(f"Unknown option(s): {', '.join(unknown)}")

        parsed = {
            name: self._parse_setval(self._options[name], given)
            for name, given in values.items()
        }
        try:
            self.update(**parsed)
        except TypeError as e:
            raise exceptions.OptionsError(str(e)) from e

    def _parse_setval(self, o: _Option, values: list[str]) -> Any:
        if typecheck.is_str_sequence(o.typespec):
            return values
        if len(values) > 1:
            raise exceptions.OptionsError(f"Received multiple values for {o.name}: {values}")

        base, optional = typecheck.unwrap_optional(o.typespec)
        try:
            parse = _PARSERS[base]
        except KeyError:
            raise NotImplementedError(f"Unsupported option type: {o.typespec}") from None
        value = parse(o, values[0] if values else None)
        if value is None and not optional:
            raise exceptions.OptionsError(f"Option is required: {o.name}")
        return value

    def make_parser(self, parser, optname, metavar=None, short=None):
        """
        Add a command line flag for the named option. Unknown names are ignored.
        """
        o = self._options.get(optname)
        if o is None:
            return

        def flags(name: str, with_short: bool) -> list[str]:
            names = ["--" + name.replace("_", "-")]
            if short and with_short:
                names.append("-" + short)
            return names

        if o.typespec is bool:
            # --foo and --no-foo; the short flag is the one that changes the default.
            group = parser.add_mutually_exclusive_group(required=False)
            group.add_argument(
                *flags("no_" + optname, bool(o.default)),
                action="store_false",
                dest=optname,
            )
            group.add_argument(
                *flags(optname, not o.default),
                action="store_true",
                dest=optname,
                help=o.help,
            )
            parser.set_defaults(**{optname: None})
            return

        kwargs: dict[str, Any] = dict(dest=optname, metavar=metavar, help=o.help)
        base, _ = typecheck.unwrap_optional(o.typespec)
        if typecheck.is_str_sequence(o.typespec):
            kwargs.update(
                action="append",
                type=str,
                choices=o.choices,
                help=o.help + " May be passed multiple times.",
            )
        elif base is int:
            kwargs.update(type=int)
        elif base is str:
            kwargs.update(type=str, choices=o.choices)
        else:
            raise ValueError(f"Unsupported option type: {o.typespec}")
        parser.add_argument(*flags(optname, True), **kwargs)


def dump_defaults(opts: OptManager, out: TextIO) -> None:
    """
    Write all options with their defaults as YAML, each preceded by its help text.
    """
    data = ruamel.yaml.comments.CommentedMap()
    for name, o in sorted(opts.items()):
        data[name] = o.default
        if o.choices:
            hint = f"Valid values are {', '.join(map(repr, o.choices))}."
        else:
            hint = f"Type {typecheck.typespec_to_str(o.typespec)}."
        comment = "\n".join(textwrap.wrap(f"{o.help} {hint}"))
        data.yaml_set_comment_before_after_key(name, before="\n" + comment)
    ruamel.yaml.YAML().dump(data, out)


def parse(text: str) -> dict:
    if not text:
        return {}
    yaml = ruamel.yaml.YAML(typ="safe", pure=True)
    try:
        data = yaml.load(text)
    except ruamel.yaml.error.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is None:
            raise exceptions.OptionsError("Could not parse options.") from e
        raise exceptions.OptionsError(
            f"Config error at line {mark.line + 1}:\n"
            f"{mark.get_snippet()}\n{getattr(e, 'problem', '')}"
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise exceptions.OptionsError("Config error - no keys found.")
    return data


def load(opts: OptManager, text: str) -> None:
    """
    Apply YAML config text on top of the current option values.
    """
    try:
        unknown = opts.update_known(**parse(text))
    except TypeError as e:
        raise exceptions.OptionsError(str(e)) from e
    if unknown:
        raise exceptions.OptionsError(f"Unknown option(s): {', '.join(unknown)}")


def load_paths(opts: OptManager, *paths: Path | str) -> None:
    """
    Load config files in order, later files overriding earlier ones. Missing
    files are skipped; unreadable or invalid ones raise OptionsError.
    """
    for path in paths:
        path = Path(path).expanduser()
        if not path.is_file():
            continue
        try:
            load(opts, path.read_text(encoding="utf8"))
        except (UnicodeDecodeError, exceptions.OptionsError) as e:
            raise exceptions.OptionsError(f"Error reading {path}: {e}") from e
