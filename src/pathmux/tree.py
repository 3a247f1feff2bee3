"""Zero dependency routing tree implementation with path param support.

Inspired by julienschmidt/httprouter's pattern syntax and go 1.22+ net/http's
routingNode. There is one segment-based trie per HTTP method:

    /product/:id            named parameter, binds exactly one segment
    /images/*image          catch-all, binds the rest of the path ("/small/a.png")

Trees are immutable. Registering a route builds a new tree, so a lookup running
concurrently with a registration always sees either the old or the new tree.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import Never

from pathmux.errors import MalformedPatternError, RouteConflictError

path_params: ContextVar[dict[str, str]] = ContextVar("path_params")
http_route: ContextVar[str] = ContextVar("http_route")
allowed_methods: ContextVar[tuple[str, ...]] = ContextVar("allowed_methods")

ANY_METHOD = "*"


class SegmentKind(Enum):
    """Classification of a single pattern segment."""

    LITERAL = "literal"  # exact string match
    PARAM = "param"  # ":name", binds one segment
    CATCHALL = "catchall"  # "*name", binds the remainder, final segment only

    def __repr__(self) -> str:
        return str(self.value)


@dataclass(slots=True, frozen=True)
class Segment:
    kind: SegmentKind
    value: str  # literal text, or the bound name


class FrozenDict[K, V](dict[K, V]):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._hash: int | None = None

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self.items()))
        return self._hash

    def _immutable(self, *args, **kwargs) -> Never:
        msg = "FrozenDict is immutable"
        raise TypeError(msg)

    __setitem__ = __delitem__ = clear = pop = popitem = setdefault = update = _immutable


@dataclass(slots=True, frozen=True)
class Route[T]:
    method: str
    pattern: str
    handler: T


@dataclass(slots=True, frozen=True)
class Node[T]:
    """Segment-based trie node"""

    route: Route[T] | None = field(default=None)
    children: FrozenDict[str, Node[T]] = field(default_factory=FrozenDict)
    param: ParamNode[T] | None = field(default=None)
    catchall: CatchAllNode[T] | None = field(default=None)


@dataclass(slots=True, frozen=True)
class ParamNode[T]:
    name: str
    child: Node[T]


@dataclass(slots=True, frozen=True)
class CatchAllNode[T]:
    name: str
    child: Node[T]


type Trees[T] = FrozenDict[str, Node[T]]


# --- lookup outcomes ----------------------------------------------------------
@dataclass(slots=True, frozen=True)
class Match[T]:
    route: Route[T]
    params: dict[str, str]

    @property
    def handler(self) -> T:
        return self.route.handler


@dataclass(slots=True, frozen=True)
class MethodNotAllowed:
    allowed: tuple[str, ...]  # sorted, never empty


@dataclass(slots=True, frozen=True)
class NotFound:
    pass


type Lookup[T] = Match[T] | MethodNotAllowed | NotFound


# --- matching -----------------------------------------------------------------
def find_route[T](trees: Trees[T], method: str, path: str) -> Lookup[T]:
    """Resolves method/path to a route and its path params.

    Each path segment priority is: exact match > param match > catchall match.
    A branch that dead-ends deeper in the tree is backtracked out of, so a
    literal prefix never shadows a param alternative at the same level.

    Routes registered for the method are tried before any-method routes. If
    neither matches, every other method's tree is checked: if any of them
    matches the path the result is MethodNotAllowed, else NotFound.
    """
    if not path.startswith("/"):
        return NotFound()
    segments = path[1:].split("/")

    for key in (method, ANY_METHOD):
        root = trees.get(key)
        if root is None:
            continue
        bound: list[tuple[str, str]] = []
        route = _match(root, segments, 0, bound)
        if route is not None:
            return Match(route=route, params=dict(bound))

    allowed = tuple(
        sorted(
            key
            for key, root in trees.items()
            if key not in (method, ANY_METHOD)
            and _match(root, segments, 0, []) is not None
        )
    )
    if allowed:
        return MethodNotAllowed(allowed=allowed)
    return NotFound()


def _match[T](
    node: Node[T],
    segments: list[str],
    i: int,
    bound: list[tuple[str, str]],
) -> Route[T] | None:
    """Depth-first walk from segments[i], appending params to bound on success."""
    if i == len(segments):
        return node.route

    seg = segments[i]
    child = node.children.get(seg)
    if child is not None:  # exact match
        route = _match(child, segments, i + 1, bound)
        if route is not None:
            return route

    if node.param is not None and seg:  # fallback to param match
        bound.append((node.param.name, seg))
        route = _match(node.param.child, segments, i + 1, bound)
        if route is not None:
            return route
        bound.pop()

    catchall = node.catchall
    if catchall is not None and catchall.child.route is not None:
        # fallback to catchall match, leading slash is kept
        bound.append((catchall.name, "/" + "/".join(segments[i:])))
        return catchall.child.route

    return None


# --- construction -------------------------------------------------------------
def parse_pattern(pattern: str) -> tuple[Segment, ...]:
    """Splits pattern into classified segments, validating it on the way.

    An empty segment is only allowed last, where it means a trailing slash
    (`/` itself is the single empty segment).
    """
    if not pattern.startswith("/"):
        msg = f"pattern must start with '/', provided {pattern=}"
        raise MalformedPatternError(msg)
    raw = pattern[1:].split("/")

    segments: list[Segment] = []
    names: set[str] = set()
    for i, seg in enumerate(raw):
        last = i == len(raw) - 1
        if seg.startswith((":", "*")):
            kind = SegmentKind.PARAM if seg[0] == ":" else SegmentKind.CATCHALL
            name = seg[1:]
            if not name or ":" in name or "*" in name:
                msg = f"invalid name {seg!r} in {pattern=}"
                raise MalformedPatternError(msg)
            if kind is SegmentKind.CATCHALL and not last:
                msg = f"catch-all {seg!r} must be the final segment in {pattern=}"
                raise MalformedPatternError(msg)
            if name in names:
                msg = f"name {name!r} is bound twice in {pattern=}"
                raise MalformedPatternError(msg)
            names.add(name)
            segments.append(Segment(kind, name))
        elif seg == "" and not last:
            msg = f"empty segment in {pattern=}"
            raise MalformedPatternError(msg)
        else:
            segments.append(Segment(SegmentKind.LITERAL, seg))
    return tuple(segments)


def add_route[T](trees: Trees[T], method: str, pattern: str, handler: T) -> Trees[T]:
    """Returns new trees with handler registered on method/pattern.

    trees is left untouched, on error as well as on success.
    """
    if not method:
        msg = "method must not be empty"
        raise MalformedPatternError(msg)
    route = Route(method=method, pattern=pattern, handler=handler)
    new_tree = _construct_route_tree(parse_pattern(pattern), route)
    existing = trees.get(method)
    merged = new_tree if existing is None else _merge_trees(existing, new_tree)
    return FrozenDict({**trees, method: merged})


def _construct_route_tree[T](segments: tuple[Segment, ...], route: Route[T]) -> Node[T]:
    """construct single route tree, built leaf first"""
    child: Node[T] = Node(route=route)
    for seg in reversed(segments):
        if seg.kind is SegmentKind.CATCHALL:
            child = Node(catchall=CatchAllNode(name=seg.value, child=child))
        elif seg.kind is SegmentKind.PARAM:
            child = Node(param=ParamNode(name=seg.value, child=child))
        else:
            child = Node(children=FrozenDict({seg.value: child}))
    return child


def _merge_trees[T](tree1: Node[T], tree2: Node[T]) -> Node[T]:
    """merge tree2 into tree1, error on conflict"""
    if tree1.route is not None and tree2.route is not None:
        msg = (
            f"{tree2.route.method} {tree2.route.pattern!r} conflicts with "
            f"already registered {tree1.route.pattern!r}"
        )
        raise RouteConflictError(msg)
    route = tree1.route or tree2.route

    if tree1.param is not None and tree2.param is not None:
        if tree1.param.name != tree2.param.name:
            msg = (
                f"param ':{tree2.param.name}' conflicts with existing "
                f"':{tree1.param.name}' at the same position"
            )
            raise RouteConflictError(msg)
        param: ParamNode[T] | None = ParamNode(
            name=tree1.param.name,
            child=_merge_trees(tree1.param.child, tree2.param.child),
        )
    else:
        param = tree1.param or tree2.param

    if tree1.catchall is not None and tree2.catchall is not None:
        if tree1.catchall.name != tree2.catchall.name:
            msg = (
                f"catch-all '*{tree2.catchall.name}' conflicts with existing "
                f"'*{tree1.catchall.name}' at the same position"
            )
            raise RouteConflictError(msg)
        catchall: CatchAllNode[T] | None = CatchAllNode(
            name=tree1.catchall.name,
            child=_merge_trees(tree1.catchall.child, tree2.catchall.child),
        )
    else:
        catchall = tree1.catchall or tree2.catchall

    common_keys = tree1.children.keys() & tree2.children.keys()
    children: FrozenDict[str, Node[T]] = FrozenDict(
        {k: v for k, v in tree1.children.items() if k not in common_keys}
        | {k: v for k, v in tree2.children.items() if k not in common_keys}
        | {k: _merge_trees(tree1.children[k], tree2.children[k]) for k in common_keys}
    )

    return Node(route=route, children=children, param=param, catchall=catchall)


def iter_routes[T](trees: Trees[T]) -> Iterator[Route[T]]:
    """Yields every registered route, method by method."""
    for method in sorted(trees):
        yield from _walk(trees[method])


def _walk[T](node: Node[T]) -> Iterator[Route[T]]:
    if node.route is not None:
        yield node.route
    for key in sorted(node.children):
        yield from _walk(node.children[key])
    if node.param is not None:
        yield from _walk(node.param.child)
    if node.catchall is not None:
        yield from _walk(node.catchall.child)
