import typing
from collections import abc

try:
    from types import UnionType
except ImportError:  # pragma: no cover
    UnionType = object()  # type: ignore


def check_option_type(name: str, value: typing.Any, typeinfo: typing.Any) -> None:
    """
    Check if the provided value is an instance of typeinfo and raise a
    TypeError otherwise. Only the types used by tlsprobe's options are
    supported: plain classes, Optional/Union of those, and Sequence[...].
    """
    e = TypeError(f"Expected {typeinfo} for {name}, but got {type(value)}.")

    origin = typing.get_origin(typeinfo)

    if origin is typing.Union or origin is UnionType:
        for T in typing.get_args(typeinfo):
            try:
                check_option_type(name, value, T)
            except TypeError:
                pass
            else:
                return
        raise e
    elif origin is abc.Sequence:
        T = typing.get_args(typeinfo)[0]
        if not isinstance(value, (tuple, list)):
            raise e
        for v in value:
            check_option_type(name, v, T)
    elif typeinfo is typing.Any:
        return
    elif typeinfo is int and isinstance(value, bool):
        # bool is a subclass of int, but "--listen-port true" is never intended.
        raise e
    elif not isinstance(value, typeinfo):
        raise e


def unwrap_optional(typespec: typing.Any) -> tuple[typing.Any, bool]:
    """
    Split Optional[T] into (T, True). Any other type comes back as (typespec, False).
    """
    args = typing.get_args(typespec)
    if typing.get_origin(typespec) in (typing.Union, UnionType) and len(args) == 2:
        if type(None) in args:
            return next(a for a in args if a is not type(None)), True
    return typespec, False


def is_str_sequence(typespec: typing.Any) -> bool:
    return typing.get_origin(typespec) is abc.Sequence and typing.get_args(typespec) == (str,)


def typespec_to_str(typespec: typing.Any) -> str:
    if is_str_sequence(typespec):
        return "sequence of str"
    base, optional = unwrap_optional(typespec)
    if base not in (str, int, bool) or (optional and base is bool):
        raise NotImplementedError
    return f"optional {base.__name__}" if optional else base.__name__
