from abc import abstractmethod
from dataclasses import dataclass, field
from typing import overload

import beartype.typing as btyping
import jax
import jax.numpy as jnp
import jax.random as jrand
import jax.tree_util as jtu
import jaxtyping as jtyping
import penzai.pz as pz
from tensorflow_probability.substrates import jax as tfp
from typing_extensions import dataclass_transform

tfd = tfp.distributions

##########
# Typing #
##########

Any = btyping.Any
Addr = btyping.Tuple | str | int
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
FloatArray = jtyping.Float[jtyping.Array, "..."]
IntArray = jtyping.Int[jtyping.Array, "..."]
Callable = btyping.Callable
Optional = btyping.Optional
Generic = btyping.Generic
TypeVar = btyping.TypeVar

A = TypeVar("A")
R = TypeVar("R")
X = TypeVar("X")

#######################
# Probabilistic types #
#######################

Weight = FloatArray
Score = FloatArray
Density = FloatArray

##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system.

    Covariance nodes, traces, diffs and generative functions all inherit from
    it, which makes them immutable dataclasses that pretty print through
    penzai and can be flattened by `jax.tree_util`.

    * `Pytree.static(...)`: the value of the field must be a Python literal
    and is embedded in the `PyTreeDef` of the instance.
    * `Pytree.field(...)` or no annotation: the value is a dynamic leaf.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """Denote that a class (which is inheriting `Pytree`) should be treated
        as a frozen dataclass.

        Examples
        --------

        >>> from covtree.core import Pytree
        >>>
        >>> @Pytree.dataclass
        ... class Point(Pytree):
        ...     label: str = Pytree.static()
        ...     x: float
        >>>
        >>> Point("origin", 0.0).label
        'origin'
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static.
        Fields which are provided with default values must come after
        required fields in the dataclass declaration."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


@Pytree.dataclass
class Const(Generic[A], Pytree):
    """A Pytree wrapper for Python literals that should remain static.

    Args:
        value: The Python literal to wrap as static
    """

    value: A = Pytree.static()


def const(a: A) -> Const[A]:
    """Create a Const wrapper for a static value.

    >>> const(2).value
    2
    """
    return Const(a)


#########
# Diffs #
#########


class Diff(Pytree):
    """Change marker returned by incremental updates.

    There are three variants: `Initial` (there was no previous value to
    compare against), `Unchanged` and `Changed(value)`.
    """

    @abstractmethod
    def has_changed(self) -> bool:
        pass


@Pytree.dataclass
class Initial(Diff):
    """No previous trace existed, so no diff is meaningful."""

    def has_changed(self) -> bool:
        return True


@Pytree.dataclass
class Unchanged(Diff):
    def has_changed(self) -> bool:
        return False


@Pytree.dataclass
class Changed(Generic[A], Diff):
    """The value was replaced; `value` is the new value."""

    value: A

    def has_changed(self) -> bool:
        return True


#######
# GFI #
#######


class Trace(Generic[X, R], Pytree):
    @abstractmethod
    def get_gen_fn(self) -> "GFI[X, R]":
        pass

    @abstractmethod
    def get_choices(self) -> X:
        pass

    @abstractmethod
    def get_args(self) -> Any:
        pass

    @abstractmethod
    def get_retval(self) -> R:
        pass

    @abstractmethod
    def get_score(self) -> Score:
        """Log probability of every random choice recorded in the trace."""
        pass

    def __getitem__(self, addr):
        choices = self.get_choices()
        return get_choices(choices[addr])  # pyright: ignore


@Pytree.dataclass
class Tr(Trace[X, R], Pytree):
    """Concrete implementation of the Trace interface.

    Args:
        _gen_fn: The generative function that produced this trace.
        _args: Arguments passed to the generative function.
        _choices: Random choices made during execution. For `Fn`, a map from
            address to sub-trace.
        _retval: Return value of the execution.
        _score: Log probability of the choices.
    """

    _gen_fn: "GFI[X, R]"
    _args: Any
    _choices: X
    _retval: R
    _score: Score

    def get_gen_fn(self) -> "GFI[X, R]":
        assert isinstance(self._gen_fn, GFI)
        return self._gen_fn

    def get_choices(self) -> X:
        return get_choices(self._choices)

    def get_subtrace(self, addr: str) -> Trace:
        """Return the sub-trace recorded at `addr` by a `Fn`."""
        return self._choices[addr]  # pyright: ignore

    def get_args(self) -> Any:
        return self._args

    def get_retval(self) -> R:
        return self._retval

    def get_score(self) -> Score:
        if jnp.shape(self._score):
            return jnp.sum(self._score)
        else:
            return self._score


def get_choices(x: Trace[X, R] | X) -> X:
    """Extract choices from a trace or nested structure containing traces.

    Args:
        x: A trace object or nested structure that may contain traces.

    Returns:
        The random choices, with any nested traces recursively unwrapped.
    """
    x = x.get_choices() if isinstance(x, Trace) else x

    def _get_choices(x):
        if isinstance(x, Trace):
            return get_choices(x)
        else:
            return x

    return jtu.tree_map(
        _get_choices,
        x,
        is_leaf=lambda x: isinstance(x, Trace),
    )


def get_score(x: Trace[X, R]) -> Weight:
    return x.get_score()


def get_retval(x: Trace[X, R]) -> R:
    return x.get_retval()


class GFI(Generic[X, R], Pytree):
    """Generative Function Interface.

    A generative function bundles a distribution over choices `P(dx; args)`
    with a deterministic return value function `f(x, args)`. All randomness
    is drawn from an explicit JAX PRNG key passed as the first argument.

    Core Methods:
        simulate: Sample (choices, retval) ~ P(·; args)
        generate: Sample with constraints, return importance weight
        assess: Compute log P(choices; args)
        update: Edit a trace with constraints, return the incremental weight,
            the discarded choices and a retdiff

    All densities are in log space. Scores are log probabilities.
    """

    def __call__(self, *args, **kwargs) -> "Thunk[X, R]":
        return Thunk(self, args, kwargs)

    @abstractmethod
    def simulate(
        self,
        key: PRNGKey,
        *args,
        **kwargs,
    ) -> Trace[X, R]:
        """Sample an execution trace.

        The score of the returned trace is log P(choices; args).
        """
        pass

    @abstractmethod
    def generate(
        self,
        key: PRNGKey,
        x: X | None,
        *args,
        **kwargs,
    ) -> tuple[Trace[X, R], Weight]:
        """Generate a trace with optional constraints on some choices.

        Unconstrained choices are sampled from the prior, so the returned
        weight is the log probability of the constrained choices alone.
        When `x` is None this is `simulate` with weight 0.
        """
        pass

    @abstractmethod
    def assess(
        self,
        x: X,
        *args,
        **kwargs,
    ) -> tuple[Density, R]:
        """Compute log P(choices; args) and the return value for complete choices."""
        pass

    @abstractmethod
    def update(
        self,
        key: PRNGKey,
        tr: Trace[X, R],
        x_: X | None,
        *args,
        **kwargs,
    ) -> tuple[Trace[X, R], Weight, X | None, Diff]:
        """Update a trace with choice constraints.

        Returns:
            A tuple (new_trace, weight, discarded_choices, retdiff) where
            `weight` is the incremental log weight of the edit,
            `discarded_choices` holds the old values that were replaced and
            `retdiff` describes how the return value changed.
        """
        pass


########################
# Generative functions #
########################


@Pytree.dataclass
class Thunk(Generic[X, R], Pytree):
    """Delayed evaluation wrapper for generative functions.

    Args:
        gen_fn: The generative function to call.
        args: Arguments to pass to the generative function.
        kwargs: Keyword arguments to pass to the generative function.
    """

    gen_fn: GFI[X, R]
    args: tuple
    kwargs: dict = Pytree.field(default_factory=dict)

    def __matmul__(self, other: str):
        return trace(other, self.gen_fn, self.args, self.kwargs)


#################
# Distributions #
#################


@Pytree.dataclass
class Distribution(Generic[X], GFI[X, X]):
    """A `Distribution` is a generative function that implements a probability distribution.

    It wraps a keyful sampling function `sample(key, *args)` and a log
    probability density function `logpdf(x, *args)`. The return value of a
    distribution is its sample.

    Attributes:
        sample: A sampling function taking a PRNG key and parameters
        logpdf: A log probability density function taking (value, *parameters)
        name: Optional name for the distribution
    """

    _sample: Const[Callable[..., X]]
    _logpdf: Const[Callable[..., Weight]]
    name: Const[str | None]

    def sample(self, key: PRNGKey, *args, **kwargs) -> X:
        return self._sample.value(key, *args, **kwargs)

    def logpdf(self, x: X, *args, **kwargs) -> Weight:
        return self._logpdf.value(x, *args, **kwargs)

    def simulate(
        self,
        key: PRNGKey,
        *args,
        **kwargs,
    ) -> Tr[X, X]:
        x = self.sample(key, *args, **kwargs)
        log_density = self.logpdf(x, *args, **kwargs)
        return Tr(self, (args, kwargs), x, x, log_density)

    def generate(
        self,
        key: PRNGKey,
        x: X | None,
        *args,
        **kwargs,
    ) -> tuple[Tr[X, X], Weight]:
        if x is None:
            tr = self.simulate(key, *args, **kwargs)
            return tr, jnp.array(0.0)
        else:
            logp, _ = self.assess(x, *args, **kwargs)
            return Tr(self, (args, kwargs), x, x, logp), logp

    def assess(
        self,
        x: X,
        *args,
        **kwargs,
    ) -> tuple[Density, X]:
        logp = self.logpdf(x, *args, **kwargs)
        return logp, x

    def update(
        self,
        key: PRNGKey,
        tr: Tr[X, X],
        x_: X | None,
        *args,
        **kwargs,
    ) -> tuple[Tr[X, X], Weight, X | None, Diff]:
        if x_ is None:
            x = get_choices(tr)
            log_density_ = self.logpdf(x, *args, **kwargs)
            return (
                Tr(self, (args, kwargs), x, x, log_density_),
                log_density_ - tr.get_score(),
                None,
                Unchanged(),
            )
        else:
            log_density_ = self.logpdf(x_, *args, **kwargs)
            return (
                Tr(self, (args, kwargs), x_, x_, log_density_),
                log_density_ - tr.get_score(),
                tr.get_retval(),
                Changed(x_),
            )


def distribution(
    sampler: Callable[..., Any],
    logpdf: Callable[..., Any],
    /,
    name: str | None = None,
) -> Distribution[Any]:
    """Create a Distribution from a keyful sampler and a log probability function.

    Args:
        sampler: Function taking (key, *parameters) and returning a sample.
        logpdf: Function taking (value, *parameters) and returning log probability.
        name: Optional name for the distribution.
    """
    return Distribution(
        _sample=const(sampler),
        _logpdf=const(logpdf),
        name=const(name),
    )


# Mostly, just use TFP.
def tfp_distribution(
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str | None = None,
) -> Distribution[Any]:
    """Create a Distribution from a TensorFlow Probability distribution.

    Both the sampler and the log density are compiled with `jax.jit`, so
    repeated eager draws inside the tree generator stay cheap.

    Example:
        >>> import tensorflow_probability.substrates.jax as tfp
        >>> from covtree.core import tfp_distribution
        >>>
        >>> normal = tfp_distribution(tfp.distributions.Normal, name="normal")
    """

    def keyful_sampler(key, *args, **kwargs):
        d = dist(*args, **kwargs)
        return d.sample(seed=key)

    def logpdf(v, *args, **kwargs):
        d = dist(*args, **kwargs)
        return d.log_prob(v)

    return distribution(
        jax.jit(keyful_sampler),
        jax.jit(logpdf),
        name=name,
    )


######
# Fn #
######


def _get_generative_function_info(gen_fn: "GFI") -> str:
    if isinstance(gen_fn, Fn):
        return f"function '{getattr(gen_fn.source.value, '__name__', 'anonymous')}'"
    if isinstance(gen_fn, Distribution) and gen_fn.name.value:
        return f"Distribution '{gen_fn.name.value}'"
    return type(gen_fn).__name__


def _check_address_collision(
    addr: str, visited: dict[str, Any] | set[str], gen_fn: "GFI | None" = None
) -> None:
    """Raise ValueError if `addr` was already used at this level."""
    if addr in visited:
        func_info = (
            _get_generative_function_info(gen_fn) if gen_fn else "generative function"
        )
        raise ValueError(
            f"Address collision detected: '{addr}' is used multiple times at the same level.\n"
            f"Each address in a generative function must be unique.\n"
            f"Function: {func_info}"
        )


def _check_constraints_visited(
    x: dict[str, Any], visited: dict[str, Any] | set[str], gen_fn: "GFI"
) -> None:
    """Raise ValueError if a constrained address was never reached."""
    unvisited = [addr for addr in x if addr not in visited]
    if unvisited:
        raise ValueError(
            f"Constrained addresses {sorted(unvisited)} were never visited.\n"
            f"Each constraint must name an address the function draws at.\n"
            f"Function: {_get_generative_function_info(gen_fn)}"
        )


@dataclass
class Simulate:
    """Handler for simulating generative function executions.

    Tracks the accumulated score and trace map during simulation. Every
    addressed call consumes a fresh split of `key`.
    """

    key: PRNGKey
    score: Score
    trace_map: dict[str, Any]
    parent_fn: "GFI | None" = None

    def __call__(
        self,
        addr: str,
        gen_fn: GFI[X, R],
        args,
        kwargs=None,
    ) -> R:
        kwargs = kwargs or {}
        _check_address_collision(addr, self.trace_map, self.parent_fn or gen_fn)
        self.key, sub_key = jrand.split(self.key)
        tr = gen_fn.simulate(sub_key, *args, **kwargs)
        self.score += tr.get_score()
        self.trace_map[addr] = tr
        return tr.get_retval()


@dataclass
class Generate:
    key: PRNGKey
    choice_map: dict[str, Any]
    score: Score
    weight: Weight
    trace_map: dict[str, Any]
    parent_fn: "GFI | None" = None

    def __call__(
        self,
        addr: str,
        gen_fn: GFI[X, R],
        args,
        kwargs=None,
    ) -> R:
        kwargs = kwargs or {}
        _check_address_collision(addr, self.trace_map, self.parent_fn or gen_fn)
        x = get_choices(self.choice_map[addr]) if addr in self.choice_map else None
        self.key, sub_key = jrand.split(self.key)
        tr, weight = gen_fn.generate(sub_key, x, *args, **kwargs)
        self.score += tr.get_score()
        self.weight += weight
        self.trace_map[addr] = tr
        return tr.get_retval()


@dataclass
class Assess:
    choice_map: dict[str, Any]
    logp: Density
    visited_addresses: set[str] = field(default_factory=set)
    parent_fn: "GFI | None" = None

    def __call__(
        self,
        addr: str,
        gen_fn: GFI[X, R],
        args,
        kwargs=None,
    ) -> R:
        kwargs = kwargs or {}
        _check_address_collision(
            addr, self.visited_addresses, self.parent_fn or gen_fn
        )
        self.visited_addresses.add(addr)
        x = get_choices(self.choice_map[addr])
        logp, r = gen_fn.assess(x, *args, **kwargs)
        self.logp += logp
        return r


@dataclass
class Update(Generic[R]):
    key: PRNGKey
    trace: Tr[dict[str, Any], R]
    choice_map: dict[str, Any]
    trace_map: dict[str, Any]
    discard: dict[str, Any]
    score: Score
    weight: Weight
    changed: bool = False
    parent_fn: "GFI | None" = None

    def __call__(
        self,
        addr: str,
        gen_fn: GFI[X, R],
        args_,
        kwargs=None,
    ) -> R:
        kwargs = kwargs or {}
        _check_address_collision(addr, self.trace_map, self.parent_fn or gen_fn)
        subtrace = self.trace.get_subtrace(addr)
        x = self.choice_map.get(addr)
        self.key, sub_key = jrand.split(self.key)
        tr, w, discard, retdiff = gen_fn.update(sub_key, subtrace, x, *args_, **kwargs)
        self.trace_map[addr] = tr
        if discard is not None:
            self.discard[addr] = discard
        self.changed = self.changed or retdiff.has_changed()
        self.score += tr.get_score()
        self.weight += w
        return tr.get_retval()


handler_stack: list[Simulate | Assess | Generate | Update] = []


# Generative function "FFI" invocation.
def trace(
    addr: str,
    gen_fn: GFI[X, R],
    args,
    kwargs=None,
) -> R:
    if not handler_stack:
        raise RuntimeError(
            f"Addressed call '{addr}' made outside of a generative function. "
            "Use `simulate`, `generate`, `assess` or `update` with an explicit key."
        )
    handler = handler_stack[-1]
    return handler(addr, gen_fn, args, kwargs or {})


@Pytree.dataclass
class Fn(
    Generic[R],
    GFI[dict[str, Any], R],
):
    """A `Fn` is a generative function created from a Python function
    using the `@gen` decorator.

    `Fn` implements the GFI by executing the wrapped function under a handler
    that intercepts calls to other generative functions made with the `@`
    addressing syntax. The choice space is a dictionary mapping string
    addresses to the choices made at those addresses.

    Example:
        >>> import jax.random as jrand
        >>> from covtree.core import gen
        >>> from covtree.distributions import normal
        >>>
        >>> @gen
        ... def shifted():
        ...     loc = normal(0.0, 3.0) @ "loc"
        ...     return loc + 1.0
        >>>
        >>> tr = shifted.simulate(jrand.key(0))
        >>> sorted(tr.get_choices())
        ['loc']
    """

    source: Const[Callable[..., R]]

    def simulate(
        self,
        key: PRNGKey,
        *args,
        **kwargs,
    ) -> Tr[dict[str, Any], R]:
        handler_stack.append(Simulate(key, jnp.array(0.0), {}, self))
        try:
            r = self.source.value(*args, **kwargs)
        finally:
            handler = handler_stack.pop()
        assert isinstance(handler, Simulate)
        return Tr(self, (args, kwargs), handler.trace_map, r, handler.score)

    def generate(
        self,
        key: PRNGKey,
        x: dict[str, Any] | None,
        *args,
        **kwargs,
    ) -> tuple[Tr[dict[str, Any], R], Weight]:
        if x is None:
            tr = self.simulate(key, *args, **kwargs)
            return tr, jnp.array(0.0)
        handler_stack.append(
            Generate(key, x, jnp.array(0.0), jnp.array(0.0), {}, self)
        )
        try:
            r = self.source.value(*args, **kwargs)
        finally:
            handler = handler_stack.pop()
        assert isinstance(handler, Generate)
        _check_constraints_visited(x, handler.trace_map, self)
        score, weight, trace_map = handler.score, handler.weight, handler.trace_map
        return Tr(self, (args, kwargs), trace_map, r, score), weight

    def assess(
        self,
        x: dict[str, Any],
        *args,
        **kwargs,
    ) -> tuple[Density, R]:
        handler_stack.append(Assess(x, jnp.array(0.0), set(), self))
        try:
            r = self.source.value(*args, **kwargs)
        finally:
            handler = handler_stack.pop()
        assert isinstance(handler, Assess)
        _check_constraints_visited(x, handler.visited_addresses, self)
        return handler.logp, r

    def update(
        self,
        key: PRNGKey,
        tr: Tr[dict[str, Any], R],
        x_: dict[str, Any] | None,
        *args,
        **kwargs,
    ) -> tuple[Tr[dict[str, Any], R], Weight, dict[str, Any] | None, Diff]:
        x_ = {} if x_ is None else x_
        handler_stack.append(
            Update(key, tr, x_, {}, {}, jnp.array(0.0), jnp.array(0.0), False, self)
        )
        try:
            r = self.source.value(*args, **kwargs)
        finally:
            handler = handler_stack.pop()
        assert isinstance(handler, Update)
        _check_constraints_visited(x_, handler.trace_map, self)
        trace_map, score, w, discard = (
            handler.trace_map,
            handler.score,
            handler.weight,
            handler.discard,
        )
        # The body is not re-run incrementally, so any changed callee
        # conservatively marks the return value as changed.
        retdiff = Changed(r) if handler.changed else Unchanged()
        return Tr(self, (args, kwargs), trace_map, r, score), w, discard, retdiff


def gen(fn: Callable[..., R]) -> Fn[R]:
    """Convert a function into a generative function.

    The decorated function can use the `@` operator to make addressed
    random choices from distributions and other generative functions.

    Example:
        >>> from covtree.core import gen
        >>> from covtree.distributions import normal
        >>>
        >>> @gen
        ... def model(mu, sigma):
        ...     x = normal(mu, sigma) @ "x"
        ...     return x
    """
    gf = Fn(source=const(fn))
    try:
        gf.__name__ = fn.__name__
        gf.__qualname__ = fn.__qualname__
        gf.__module__ = fn.__module__
        gf.__doc__ = fn.__doc__
    except (AttributeError, TypeError):
        # Frozen dataclasses refuse attribute assignment.
        pass
    return gf
