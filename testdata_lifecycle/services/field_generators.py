"""
Field generators for synthetic data templates.

A template's schema descriptor maps field names to generator specs:

    {
        "id": {"generator": "sequence", "start": 1000},
        "first": {"generator": "faker", "provider": "first_name"},
        "last": {"generator": "faker", "provider": "last_name"},
        "email": {"generator": "template", "pattern": "{first}.{last}@example.com"},
        "amount": {"generator": "float", "min": 1, "max": 500, "precision": 2},
        "status": {"generator": "choice", "choices": ["new", "paid"], "weights": [3, 1]},
    }

Every spec may also carry ``null_probability`` (0..1). Generators draw from a
per-run ``random.Random`` and a per-run seeded ``Faker`` so output is
reproducible for a given seed. ``template`` fields may only reference other
fields of the same descriptor; fields are generated in dependency order.
"""
from __future__ import annotations

import random
import string
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from faker import Faker

from testdata_lifecycle.core.errors import ValidationError

GeneratorFunc = Callable[[Mapping[str, Any], "GeneratorContext"], Any]
SpecValidator = Callable[[Mapping[str, Any]], List[str]]
ReferenceFinder = Callable[[Mapping[str, Any]], Set[str]]

# Keys available to template patterns besides field names
TEMPLATE_BUILTINS = {"index"}

_COMMON_KEYS = {"generator", "null_probability"}

_REFERENCE_FAKER: Optional[Faker] = None


def _reference_faker() -> Faker:
    global _REFERENCE_FAKER
    if _REFERENCE_FAKER is None:
        _REFERENCE_FAKER = Faker()
    return _REFERENCE_FAKER


@dataclass
class GeneratorContext:
    """Per-run state shared by all field generators."""
    rng: random.Random
    faker: Faker
    index: int = 0
    record: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_seed(cls, seed: Optional[int]) -> "GeneratorContext":
        faker = Faker()
        faker.seed_instance(seed)
        return cls(rng=random.Random(seed), faker=faker)


class FieldGenerationError(Exception):
    """A field generator raised while building one record."""

    def __init__(self, field_name: str, cause: BaseException) -> None:
        super().__init__(f"{field_name}: {cause}")
        self.field_name = field_name
        self.cause = cause


@dataclass
class GeneratorDefinition:
    name: str
    func: GeneratorFunc
    validator: Optional[SpecValidator] = None
    references: Optional[ReferenceFinder] = None


@dataclass
class CompiledSchema:
    """A validated descriptor with fields in generation (dependency) order."""
    fields: List[str]
    order: List[str]
    specs: Dict[str, Mapping[str, Any]]
    definitions: Dict[str, GeneratorDefinition]

    def build_record(self, ctx: GeneratorContext) -> Dict[str, Any]:
        """Generate one record; raises FieldGenerationError naming the failing field."""
        ctx.record = {}
        for name in self.order:
            spec = self.specs[name]
            try:
                null_p = float(spec.get("null_probability", 0) or 0)
                if null_p and ctx.rng.random() < null_p:
                    value = None
                else:
                    value = to_jsonable(self.definitions[name].func(spec, ctx))
            except Exception as exc:
                raise FieldGenerationError(name, exc) from exc
            ctx.record[name] = value
        return {name: ctx.record[name] for name in self.fields}


def to_jsonable(value: Any) -> Any:
    """Coerce generator output into JSON-native values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return value


class FieldGeneratorRegistry:
    """Named field generators plus the consistency checks for descriptors that use them."""

    def __init__(self) -> None:
        self._generators: Dict[str, GeneratorDefinition] = {}

    def register(
        self,
        name: str,
        func: GeneratorFunc,
        *,
        validator: Optional[SpecValidator] = None,
        references: Optional[ReferenceFinder] = None,
    ) -> None:
        self._generators[name] = GeneratorDefinition(name, func, validator, references)

    def names(self) -> List[str]:
        return sorted(self._generators)

    def __contains__(self, name: object) -> bool:
        return name in self._generators

    def validate_descriptor(self, descriptor: Any) -> List[str]:
        """Return every consistency issue of the descriptor (empty list when valid)."""
        issues: List[str] = []
        if not isinstance(descriptor, Mapping) or not descriptor:
            return ["schema descriptor must be a non-empty object of field -> generator spec"]
        for name, spec in descriptor.items():
            if not isinstance(spec, Mapping):
                issues.append(f"field '{name}': spec must be an object")
                continue
            gen_name = spec.get("generator")
            if gen_name not in self._generators:
                issues.append(f"field '{name}': undefined generator {gen_name!r}")
                continue
            null_p = spec.get("null_probability", 0)
            if not isinstance(null_p, (int, float)) or isinstance(null_p, bool) or not 0 <= null_p <= 1:
                issues.append(f"field '{name}': null_probability must be a number between 0 and 1")
            definition = self._generators[gen_name]
            if definition.validator is not None:
                issues.extend(f"field '{name}': {msg}" for msg in definition.validator(spec))
            if definition.references is not None:
                for ref in sorted(definition.references(spec)):
                    if ref == name:
                        issues.append(f"field '{name}': references itself")
                    elif ref not in descriptor and ref not in TEMPLATE_BUILTINS:
                        issues.append(f"field '{name}': references undefined field '{ref}'")
        if not issues:
            try:
                self._generation_order(descriptor)
            except ValueError as exc:
                issues.append(str(exc))
        return issues

    def compile(self, descriptor: Any) -> CompiledSchema:
        """Validate and prepare a descriptor. Raises ValidationError listing every issue."""
        issues = self.validate_descriptor(descriptor)
        if issues:
            raise ValidationError("Inconsistent schema descriptor", issues=issues)
        return CompiledSchema(
            fields=list(descriptor),
            order=self._generation_order(descriptor),
            specs={name: spec for name, spec in descriptor.items()},
            definitions={name: self._generators[spec["generator"]] for name, spec in descriptor.items()},
        )

    def _generation_order(self, descriptor: Mapping[str, Mapping[str, Any]]) -> List[str]:
        deps: Dict[str, Set[str]] = {}
        for name, spec in descriptor.items():
            finder = self._generators[spec["generator"]].references
            deps[name] = {r for r in (finder(spec) if finder else set()) if r in descriptor}
        order: List[str] = []
        done: Set[str] = set()
        visiting: Set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                raise ValueError(f"field '{name}': circular template reference")
            visiting.add(name)
            for dep in sorted(deps[name]):
                visit(dep)
            visiting.discard(name)
            done.add(name)
            order.append(name)

        for name in descriptor:
            visit(name)
        return order


# Built-in generators


def _number(spec: Mapping[str, Any], key: str, default: Any) -> Any:
    value = spec.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"'{key}' must be a number")
    return value


def _check_range(spec: Mapping[str, Any], default_min: Any, default_max: Any) -> List[str]:
    try:
        lo = _number(spec, "min", default_min)
        hi = _number(spec, "max", default_max)
    except TypeError as exc:
        return [str(exc)]
    return [] if lo <= hi else ["'min' must not exceed 'max'"]


def _gen_sequence(spec, ctx):
    return spec.get("start", 1) + ctx.index * spec.get("step", 1)


def _check_sequence(spec):
    issues = []
    for key in ("start", "step"):
        if key in spec and (isinstance(spec[key], bool) or not isinstance(spec[key], int)):
            issues.append(f"'{key}' must be an integer")
    return issues


def _gen_integer(spec, ctx):
    return ctx.rng.randint(int(spec.get("min", 0)), int(spec.get("max", 100)))


def _gen_float(spec, ctx):
    value = ctx.rng.uniform(float(spec.get("min", 0.0)), float(spec.get("max", 1.0)))
    precision = spec.get("precision")
    return round(value, precision) if precision is not None else value


def _check_float(spec):
    issues = _check_range(spec, 0.0, 1.0)
    precision = spec.get("precision")
    if precision is not None and (isinstance(precision, bool) or not isinstance(precision, int) or precision < 0):
        issues.append("'precision' must be a non-negative integer")
    return issues


def _gen_boolean(spec, ctx):
    return ctx.rng.random() < float(spec.get("probability", 0.5))


def _check_boolean(spec):
    p = spec.get("probability", 0.5)
    if isinstance(p, bool) or not isinstance(p, (int, float)) or not 0 <= p <= 1:
        return ["'probability' must be a number between 0 and 1"]
    return []


def _gen_choice(spec, ctx):
    return ctx.rng.choices(list(spec["choices"]), weights=spec.get("weights"))[0]


def _check_choice(spec):
    choices = spec.get("choices")
    if not isinstance(choices, list) or not choices:
        return ["'choices' must be a non-empty list"]
    weights = spec.get("weights")
    if weights is not None:
        if not isinstance(weights, list) or len(weights) != len(choices):
            return ["'weights' must be a list with one weight per choice"]
        if any(isinstance(w, bool) or not isinstance(w, (int, float)) or w < 0 for w in weights) or not sum(weights):
            return ["'weights' must be non-negative numbers with a positive sum"]
    return []


def _gen_uuid(spec, ctx):
    return uuid.UUID(int=ctx.rng.getrandbits(128), version=4)


def _gen_constant(spec, ctx):
    return spec["value"]


def _check_constant(spec):
    return [] if "value" in spec else ["'value' is required"]


_DEFAULT_START = datetime(2020, 1, 1, tzinfo=timezone.utc)
_DEFAULT_END = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _parse_instant(value: Any, default: datetime) -> datetime:
    if value is None:
        return default
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _gen_datetime(spec, ctx):
    start = _parse_instant(spec.get("start"), _DEFAULT_START)
    end = _parse_instant(spec.get("end"), _DEFAULT_END)
    offset = ctx.rng.uniform(0, (end - start).total_seconds())
    value = start + timedelta(seconds=offset)
    if spec.get("date_only"):
        return value.date()
    return value.replace(microsecond=0)


def _check_datetime(spec):
    try:
        start = _parse_instant(spec.get("start"), _DEFAULT_START)
        end = _parse_instant(spec.get("end"), _DEFAULT_END)
    except ValueError:
        return ["'start'/'end' must be ISO-8601 timestamps"]
    return [] if start <= end else ["'start' must not be after 'end'"]


def _gen_string(spec, ctx):
    alphabet = spec.get("alphabet") or (string.ascii_letters + string.digits)
    length = ctx.rng.randint(int(spec.get("min_length", spec.get("length", 8))), int(spec.get("max_length", spec.get("length", 8))))
    return spec.get("prefix", "") + "".join(ctx.rng.choice(alphabet) for _ in range(length))


def _check_string(spec):
    issues = []
    for key in ("length", "min_length", "max_length"):
        if key in spec and (isinstance(spec[key], bool) or not isinstance(spec[key], int) or spec[key] < 0):
            issues.append(f"'{key}' must be a non-negative integer")
    if not issues:
        lo = spec.get("min_length", spec.get("length", 8))
        hi = spec.get("max_length", spec.get("length", 8))
        if lo > hi:
            issues.append("'min_length' must not exceed 'max_length'")
    if "alphabet" in spec and (not isinstance(spec["alphabet"], str) or not spec["alphabet"]):
        issues.append("'alphabet' must be a non-empty string")
    return issues


def _template_fields(spec: Mapping[str, Any]) -> Set[str]:
    pattern = spec.get("pattern")
    if not isinstance(pattern, str):
        return set()
    names = set()
    for _, field_name, _, _ in string.Formatter().parse(pattern):
        if field_name:
            names.add(field_name.split(".")[0].split("[")[0])
    return names


def _gen_template(spec, ctx):
    values = dict(ctx.record)
    values["index"] = ctx.index
    return spec["pattern"].format(**values)


def _check_template(spec):
    pattern = spec.get("pattern")
    if not isinstance(pattern, str) or not pattern:
        return ["'pattern' must be a non-empty string"]
    try:
        list(string.Formatter().parse(pattern))
    except ValueError as exc:
        return [f"invalid pattern: {exc}"]
    if any(not name for _, name, _, _ in string.Formatter().parse(pattern) if name is not None):
        return ["positional '{}' placeholders are not allowed; name a field"]
    return []


def _gen_faker(spec, ctx):
    provider = getattr(ctx.faker, spec["provider"])
    return provider(*spec.get("args", []), **spec.get("kwargs", {}))


def _check_faker(spec):
    provider = spec.get("provider")
    if not isinstance(provider, str) or not provider or provider.startswith("_"):
        return ["'provider' must name a Faker provider"]
    try:
        attr = getattr(_reference_faker(), provider)
    except (AttributeError, TypeError):
        return [f"unknown Faker provider {provider!r}"]
    if not callable(attr):
        return [f"unknown Faker provider {provider!r}"]
    if not isinstance(spec.get("args", []), list) or not isinstance(spec.get("kwargs", {}), dict):
        return ["'args' must be a list and 'kwargs' an object"]
    return []


# PUBLIC_INTERFACE
def default_registry() -> FieldGeneratorRegistry:
    """Registry with the built-in generators."""
    registry = FieldGeneratorRegistry()
    registry.register("sequence", _gen_sequence, validator=_check_sequence)
    registry.register("integer", _gen_integer, validator=lambda s: _check_range(s, 0, 100))
    registry.register("float", _gen_float, validator=_check_float)
    registry.register("boolean", _gen_boolean, validator=_check_boolean)
    registry.register("choice", _gen_choice, validator=_check_choice)
    registry.register("uuid", _gen_uuid)
    registry.register("constant", _gen_constant, validator=_check_constant)
    registry.register("datetime", _gen_datetime, validator=_check_datetime)
    registry.register("string", _gen_string, validator=_check_string)
    registry.register("template", _gen_template, validator=_check_template, references=_template_fields)
    registry.register("faker", _gen_faker, validator=_check_faker)
    return registry
