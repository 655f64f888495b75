"""
Typed, tagged parameter sets for survival learners.

A learner declares the options it accepts as a ``ParamSet``. Values are
validated at the moment they are set, so a bad option never reaches the
fitting routine. Tags group options by the call they are routed to
(e.g. ``train`` for the fitting call, ``control`` for the optimiser).
"""

import math
import numbers
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


class ParamError(ValueError):
    """Raised when a parameter id or value is not accepted by a ParamSet."""


_NO_DEFAULT = object()


class Param:
    """
    Base parameter descriptor.

    Parameters
    ----------
    id : str
        Parameter name as exposed to users
    default : Any, optional
        Default used by the fitting routine when the value is not set
    tags : Iterable[str]
        Tags controlling where the value is routed
    """

    kind = 'untyped'

    def __init__(self, id: str, default: Any = _NO_DEFAULT, tags: Iterable[str] = ()):
        self.id = id
        self.default = default
        self.tags = frozenset([tags] if isinstance(tags, str) else tags)

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def check(self, value: Any) -> Any:
        """Validate ``value`` and return it in canonical form."""
        return value

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, tags={sorted(self.tags)})"


class ParamUty(Param):
    """Parameter accepting any value."""


class _NumericParam(Param):

    def __init__(
        self,
        id: str,
        default: Any = _NO_DEFAULT,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
        tags: Iterable[str] = (),
    ):
        super().__init__(id, default=default, tags=tags)
        self.lower = lower
        self.upper = upper

    def _check_bounds(self, value):
        if self.lower is not None and value < self.lower:
            raise ParamError(f"{self.id}: {value} is below the lower bound {self.lower}")
        if self.upper is not None and value > self.upper:
            raise ParamError(f"{self.id}: {value} is above the upper bound {self.upper}")
        return value


class ParamInt(_NumericParam):
    """Integer parameter with optional inclusive bounds."""

    kind = 'integer'

    def check(self, value: Any) -> int:
        if isinstance(value, bool):
            raise ParamError(f"{self.id}: expected an integer, got a boolean")
        if isinstance(value, numbers.Integral):
            value = int(value)
        elif isinstance(value, numbers.Real) and float(value).is_integer():
            value = int(value)
        else:
            raise ParamError(f"{self.id}: expected an integer, got {value!r}")
        return self._check_bounds(value)


class ParamDbl(_NumericParam):
    """Real-valued parameter with optional inclusive bounds."""

    kind = 'numeric'

    def check(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ParamError(f"{self.id}: expected a number, got {value!r}")
        value = float(value)
        if math.isnan(value):
            raise ParamError(f"{self.id}: NaN is not a valid value")
        return self._check_bounds(value)


class ParamFct(Param):
    """Parameter restricted to a fixed set of string levels."""

    kind = 'factor'

    def __init__(
        self,
        id: str,
        levels: Sequence[str],
        default: Any = _NO_DEFAULT,
        tags: Iterable[str] = (),
    ):
        super().__init__(id, default=default, tags=tags)
        self.levels = tuple(levels)

    def check(self, value: Any) -> str:
        if value not in self.levels:
            raise ParamError(
                f"{self.id}: {value!r} is not one of {', '.join(self.levels)}"
            )
        return value


class ParamSet:
    """
    Collection of parameter descriptors plus the values set on them.

    Only explicitly set values are forwarded to a fitting routine; declared
    defaults are documentation of what the routine does when a value is
    left unset.

    Parameters
    ----------
    params : List[Param]
        Parameter descriptors; ids must be unique
    """

    def __init__(self, params: List[Param]):
        self.params: Dict[str, Param] = {}
        for param in params:
            if param.id in self.params:
                raise ParamError(f"Duplicate parameter id: {param.id}")
            self.params[param.id] = param
        self._values: Dict[str, Any] = {}

    def __contains__(self, id: str) -> bool:
        return id in self.params

    def __len__(self) -> int:
        return len(self.params)

    def ids(self, tags: Optional[Iterable[str]] = None) -> List[str]:
        """Parameter ids, optionally restricted to those carrying all ``tags``."""
        if tags is None:
            return list(self.params)
        tags = frozenset([tags] if isinstance(tags, str) else tags)
        return [id for id, param in self.params.items() if tags <= param.tags]

    @property
    def default(self) -> Dict[str, Any]:
        return {id: p.default for id, p in self.params.items() if p.has_default}

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    @values.setter
    def values(self, values: Mapping[str, Any]) -> None:
        self._values = self._validate(values)

    def _validate(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        checked = {}
        for id, value in values.items():
            if id not in self.params:
                raise ParamError(f"Unknown parameter: {id}")
            checked[id] = self.params[id].check(value)
        return checked

    def set_values(self, values: Optional[Mapping[str, Any]] = None, **kwargs) -> 'ParamSet':
        """
        Validate and set parameter values.

        Ids containing dots (``rel.tolerance``) can only be passed through
        the ``values`` mapping. Nothing is changed if any value is invalid.
        """
        update = dict(values or {})
        update.update(kwargs)
        self._values.update(self._validate(update))
        return self

    def unset(self, *ids: str) -> 'ParamSet':
        for id in ids:
            self._values.pop(id, None)
        return self

    def get_values(self, tags: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Set values whose parameter carries all of ``tags``."""
        selected = set(self.ids(tags))
        return {id: v for id, v in self._values.items() if id in selected}

    def __repr__(self) -> str:
        return f"ParamSet({len(self.params)} params, values={self._values})"
