"""Tree-by-tree selection of an R-vine structure and its pair copulas.

Every tree is a graph whose vertices are the edges of the previous tree. Two
vertices may only be joined when they share a vertex of the previous tree
(proximity condition), so every selected structure is valid by construction.
The first tree hangs off a star with a virtual root so that the same test
applies to all levels.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

import torch

from . import criteria, stats
from .bicop import PairCopula
from .controls import FitControlsVinecop, SelectionPolicy
from .errors import Diagnostic, SelectionNonconvergence, StructureError
from .families import BicopFamily
from .pair_select import PairSelection, select_pair
from .parallel import ParallelBatcher
from .structure import StructureModel

logger = logging.getLogger(__name__)


@dataclass
class _Vertex:
    hfunc1: torch.Tensor | None = None
    hfunc2: torch.Tensor | None = None
    prev_edge_indices: list[int] = field(default_factory=list)
    conditioned: list[int] = field(default_factory=list)
    conditioning: list[int] = field(default_factory=list)
    all_indices: list[int] = field(default_factory=list)


@dataclass
class _Edge:
    u: int
    v: int
    weight: float = 1.0
    crit: float = 0.0
    pc_data: torch.Tensor | None = None
    conditioned: list[int] = field(default_factory=list)
    conditioning: list[int] = field(default_factory=list)
    all_indices: list[int] = field(default_factory=list)
    pair_copula: PairCopula | None = None
    hfunc1: torch.Tensor | None = None
    hfunc2: torch.Tensor | None = None
    loglik: float = 0.0
    npars: float = 0.0
    diagnostics: list[Diagnostic] = field(default_factory=list)


class _Graph:
    def __init__(self, n_vertices: int):
        self.vertices: list[_Vertex] = [_Vertex() for _ in range(int(n_vertices))]
        self._edges: dict[tuple[int, int], _Edge] = {}
        self._nbrs: list[set[int]] = [set() for _ in range(int(n_vertices))]
        # Insertion order of the undirected edges; all iteration follows it.
        self._edge_order: list[tuple[int, int]] = []

    def copy(self) -> "_Graph":
        g = _Graph(len(self.vertices))
        g.vertices = self.vertices
        g._edge_order = list(self._edge_order)
        for k, e in self._edges.items():
            g._edges[k] = dataclasses.replace(e)
            g._nbrs[e.u].add(e.v)
            g._nbrs[e.v].add(e.u)
        return g

    def add_edge(self, u: int, v: int) -> _Edge:
        if u == v:
            raise ValueError("self-loop")
        key = (u, v) if u < v else (v, u)
        if key in self._edges:
            return self._edges[key]
        # The (u, v) orientation decides which argument of the pair copula each vertex feeds.
        e = _Edge(u=u, v=v)
        self._edges[key] = e
        self._edge_order.append(key)
        self._nbrs[u].add(v)
        self._nbrs[v].add(u)
        return e

    def remove_edge(self, u: int, v: int) -> None:
        key = (u, v) if u < v else (v, u)
        if self._edges.pop(key, None) is not None:
            self._nbrs[u].discard(v)
            self._nbrs[v].discard(u)

    def edges(self) -> Iterable[_Edge]:
        for k in self._edge_order:
            e = self._edges.get(k)
            if e is not None:
                yield e

    def edge(self, u: int, v: int) -> _Edge | None:
        return self._edges.get((u, v) if u < v else (v, u))

    def num_vertices(self) -> int:
        return len(self.vertices)

    def num_edges(self) -> int:
        return len(self._edges)

    def degree(self, u: int) -> int:
        return len(self._nbrs[u])


def _intersect(a: list[int], b: list[int]) -> list[int]:
    sb = set(b)
    return [x for x in a if x in sb]


def _sym_diff_ordered(a: list[int], b: list[int]) -> list[int]:
    sa, sb = set(a), set(b)
    return [x for x in a if x not in sb] + [x for x in b if x not in sa]


def _find_common_neighbor(v0: _Vertex, v1: _Vertex) -> int:
    inter = _intersect(v0.prev_edge_indices, v1.prev_edge_indices)
    return inter[0] if inter else -1


def _get_hfunc(v: _Vertex, is_first: bool) -> torch.Tensor:
    h = v.hfunc1 if is_first else v.hfunc2
    if h is None:
        raise RuntimeError("missing h-function on vertex")
    return h


def _get_pc_data(tree: _Graph, v0i: int, v1i: int) -> torch.Tensor:
    v0, v1 = tree.vertices[v0i], tree.vertices[v1i]
    cn = _find_common_neighbor(v0, v1)
    if cn < 0:
        raise StructureError("proximity condition violated (no common neighbor)")
    u1 = _get_hfunc(v0, v0.prev_edge_indices.index(cn) == 0)
    u2 = _get_hfunc(v1, v1.prev_edge_indices.index(cn) == 0)
    return torch.stack([u1, u2], dim=1)


def edge_criterion(pc_data: torch.Tensor, name: str, weights: torch.Tensor | None) -> float:
    """``|dependence| * sqrt(fraction of complete rows)`` for a candidate edge."""
    mask = torch.isfinite(pc_data).all(dim=1)
    if weights is not None:
        mask = mask & torch.isfinite(weights)
    xy = pc_data[mask]
    if xy.shape[0] <= 10:
        return 0.0
    freq = xy.shape[0] / pc_data.shape[0]
    w = weights[mask] if weights is not None else None
    value = stats.dependence(xy[:, 0], xy[:, 1], name, weights=w)
    if math.isnan(value):
        return 0.0
    return abs(value) * math.sqrt(freq)


def _mst_prim(graph: _Graph) -> set[tuple[int, int]]:
    n = graph.num_vertices()
    if n <= 1:
        return set()
    in_tree = [False] * n
    best_w = [math.inf] * n
    best_p = [-1] * n
    best_w[0] = 0.0
    for _ in range(n):
        v, wv = -1, math.inf
        for i in range(n):
            if not in_tree[i] and best_w[i] < wv:
                v, wv = i, best_w[i]
        if v < 0:
            break
        in_tree[v] = True
        for u in sorted(graph._nbrs[v]):
            if in_tree[u]:
                continue
            w = graph.edge(v, u).weight
            bw = best_w[u]
            if w < bw - 1e-15 or (abs(w - bw) <= 1e-15 and (best_p[u] < 0 or v < best_p[u])):
                best_w[u] = w
                best_p[u] = v
    out = set()
    for u in range(1, n):
        p = best_p[u]
        if p >= 0:
            out.add((p, u) if p < u else (u, p))
    return out


def _mst_kruskal(graph: _Graph) -> set[tuple[int, int]]:
    n = graph.num_vertices()
    parent = list(range(n))
    rank = [0] * n

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: int, b: int) -> bool:
        ra, rb = find(a), find(b)
        if ra == rb:
            return False
        if rank[ra] < rank[rb]:
            ra, rb = rb, ra
        parent[rb] = ra
        if rank[ra] == rank[rb]:
            rank[ra] += 1
        return True

    edges = sorted(graph.edges(), key=lambda e: (e.weight, min(e.u, e.v), max(e.u, e.v)))
    out = set()
    for e in edges:
        if union(e.u, e.v):
            out.add((e.u, e.v) if e.u < e.v else (e.v, e.u))
            if len(out) == n - 1:
                break
    return out


@dataclass
class SelectionResult:
    structure: StructureModel
    pair_copulas: list[list[PairCopula]]
    loglik: float
    threshold: float
    criterion_value: float
    diagnostics: list[Diagnostic]
    rounds: int


@dataclass
class _Round:
    trees: list[_Graph]
    trunc_lvl: int
    threshold: float
    loglik: float
    criterion: float


class StructureSelector:
    """Select structure and pair copulas jointly, one tree at a time.

    Tree levels run sequentially; within a level, edge criteria and
    pair-copula fits are independent tasks dispatched to a
    :class:`ParallelBatcher`. When the threshold is selected automatically an
    outer loop over thresholds runs sequentially, each round rebuilding the
    trees, so the stopping decision does not depend on the number of workers.
    """

    def __init__(self, data: torch.Tensor, controls: FitControlsVinecop,
                 *, structure: StructureModel | None = None):
        u = stats.as_float64(data)
        if u.ndim != 2:
            raise ValueError("data must be a 2-D tensor")
        if u.shape[1] < 2:
            raise ValueError("data must have at least 2 columns")
        self.u = stats.clamp_unit(u)
        self.d = int(u.shape[1])
        self.n = int(u.shape[0])
        self.controls = controls
        if controls.weights is not None and controls.weights.numel() != self.n:
            raise ValueError("weights must have one entry per observation")
        policy = controls.resolve(self.d)
        self.structure = structure
        if structure is not None:
            if structure.d != self.d:
                raise StructureError(f"structure has dimension {structure.d}, data has {self.d} columns")
            policy = dataclasses.replace(policy, trunc_lvl=min(policy.trunc_lvl, structure.trunc_lvl))
        self.policy: SelectionPolicy = policy
        self.batcher = ParallelBatcher(policy.cores)
        self.n_eff = criteria.n_eff(controls.weights, self.n)

    # ---- one tree ----

    def _make_base_tree(self) -> _Graph:
        g = _Graph(self.d + 1)
        root = self.d
        order = self.structure.order if self.structure is not None else range(1, self.d + 1)
        for target, var in enumerate(order):
            e = g.add_edge(root, target)
            col = self.u[:, var - 1]
            e.hfunc1 = col
            e.hfunc2 = col
            e.conditioned = [var - 1]
            e.all_indices = [var - 1]
        return g

    @staticmethod
    def _edges_as_vertices(prev: _Graph) -> _Graph:
        edges = list(prev.edges())
        g = _Graph(len(edges))
        for v, e in zip(g.vertices, edges):
            v.hfunc1, v.hfunc2 = e.hfunc1, e.hfunc2
            v.conditioned = list(e.conditioned)
            v.conditioning = list(e.conditioning)
            v.all_indices = list(e.all_indices)
            v.prev_edge_indices = [e.u, e.v]
        return g

    def _add_allowed_edges(self, tree: _Graph, t: int, threshold: float) -> None:
        if self.structure is not None:
            pairs = [(e, self.structure.min_at(t, e) - 1) for e in range(tree.num_vertices() - 1)]
        else:
            pairs = [(v0, v1) for v0 in range(tree.num_vertices()) for v1 in range(v0)
                     if _find_common_neighbor(tree.vertices[v0], tree.vertices[v1]) >= 0]
        name, w = self.policy.tree_criterion, self.controls.weights
        crits = self.batcher.map(lambda p: edge_criterion(_get_pc_data(tree, *p), name, w), pairs)
        for (v0, v1), crit in zip(pairs, crits):
            e = tree.add_edge(v0, v1)
            e.crit = crit
            e.weight = 1.0 - crit if crit >= threshold else 1.0

    def _select_edges(self, tree: _Graph) -> None:
        if self.structure is not None or tree.num_vertices() <= 2:
            return
        if self.policy.tree_algorithm == "mst_kruskal":
            keep = _mst_kruskal(tree)
        else:
            keep = _mst_prim(tree)
        for e in list(tree.edges()):
            if ((e.u, e.v) if e.u < e.v else (e.v, e.u)) not in keep:
                tree.remove_edge(e.u, e.v)

    @staticmethod
    def _add_edge_info(tree: _Graph) -> None:
        for e in tree.edges():
            v0, v1 = tree.vertices[e.u], tree.vertices[e.v]
            e.pc_data = _get_pc_data(tree, e.u, e.v)
            e.conditioned = _sym_diff_ordered(v0.all_indices, v1.all_indices)
            e.conditioning = _intersect(v0.all_indices, v1.all_indices)
            e.all_indices = e.conditioned + e.conditioning

    def _select_pair_copulas(self, tree: _Graph, t: int, threshold: float) -> None:
        pair_controls = self.controls.pair_controls()
        if self.controls.selection_criterion == "mbicv":
            pair_controls = dataclasses.replace(pair_controls, psi0=self.policy.psi0 ** (t + 1))
        edges = list(tree.edges())

        def fit(e: _Edge) -> tuple[PairSelection, torch.Tensor, torch.Tensor]:
            sel = select_pair(e.pc_data, pair_controls, threshold=threshold, dependence=e.crit)
            pc = sel.pair_copula
            return sel, pc.hfunc1(e.pc_data), pc.hfunc2(e.pc_data)

        for e, (sel, h1, h2) in zip(edges, self.batcher.map(fit, edges)):
            e.pair_copula = sel.pair_copula
            e.loglik = sel.loglik
            e.npars = sel.pair_copula.npars
            e.diagnostics = sel.diagnostics
            e.hfunc1, e.hfunc2 = h1, h2

    def _tree_criterion(self, tree: _Graph, t: int) -> tuple[float, float]:
        edges = list(tree.edges())
        loglik = sum(e.loglik for e in edges)
        npars = sum(e.npars for e in edges)
        nonindep = sum(e.pair_copula.family != BicopFamily.indep for e in edges)
        value = criteria.tree_criterion(loglik, npars, self.n_eff, nonindep, len(edges) - nonindep,
                                        t + 1, self.policy.psi0)
        return loglik, value

    # ---- all trees ----

    def _select_trees(self, threshold: float) -> _Round:
        trees = [self._make_base_tree()]
        loglik = 0.0
        total = 0.0
        trunc = self.policy.trunc_lvl
        for t in range(self.policy.trunc_lvl):
            tree = self._edges_as_vertices(trees[t])
            self._add_allowed_edges(tree, t, threshold)
            self._select_edges(tree)
            self._add_edge_info(tree)
            self._select_pair_copulas(tree, t, threshold)
            ll_tree, crit_tree = self._tree_criterion(tree, t)
            if self.policy.show_trace:
                nonindep = sum(e.pair_copula.family != BicopFamily.indep for e in tree.edges())
                logger.info("** Tree: %d, edges: %d, non-independent: %d, loglik: %.3f, mbicv: %.3f",
                            t, tree.num_edges(), nonindep, ll_tree, crit_tree)
            if self.policy.select_trunc_lvl and t > 0 and crit_tree >= 0.0:
                trunc = t
                if self.policy.show_trace:
                    logger.info("tree %d does not improve the criterion; truncating at level %d", t, t)
                break
            trees.append(tree)
            loglik += ll_tree
            total += crit_tree
        return _Round(trees=trees, trunc_lvl=trunc, threshold=threshold, loglik=loglik, criterion=total)

    @staticmethod
    def _thresholded(rnd: _Round) -> list[float]:
        return [e.crit for tree in rnd.trees[1:] for e in tree.edges() if e.crit < rnd.threshold]

    def select(self) -> SelectionResult:
        if self.n == 0:
            raise ValueError("data has no rows")
        diagnostics: list[Diagnostic] = []
        if not self.policy.select_threshold:
            best = self._select_trees(self.policy.threshold)
            rounds = 1
        else:
            best = None
            threshold = self.policy.threshold
            rounds = 0
            converged = False
            while rounds < self.policy.max_rounds:
                rounds += 1
                rnd = self._select_trees(threshold)
                if self.policy.show_trace:
                    logger.info("threshold %.4f: criterion %.3f", threshold, rnd.criterion)
                if best is not None and rnd.criterion >= best.criterion:
                    converged = True
                    break
                best = rnd
                thresholded = self._thresholded(rnd)
                if not thresholded or threshold < 0.01:
                    converged = True
                    break
                threshold = criteria.next_threshold(thresholded)
            if not converged:
                diagnostics.append(Diagnostic(
                    SelectionNonconvergence,
                    f"threshold search stopped after {rounds} rounds; returning the best model found"))
        structure, pcs, edge_diags = self._finalize(best)
        return SelectionResult(
            structure=structure,
            pair_copulas=pcs,
            loglik=best.loglik,
            threshold=best.threshold,
            criterion_value=best.criterion,
            diagnostics=edge_diags + diagnostics,
            rounds=rounds,
        )

    # ---- conversion to a structure ----

    def _finalize(self, rnd: _Round) -> tuple[StructureModel, list[list[PairCopula]], list[Diagnostic]]:
        d = self.d
        trunc = rnd.trunc_lvl
        if self.structure is not None:
            pcs = [[e.pair_copula for e in rnd.trees[t + 1].edges()] for t in range(trunc)]
            diags = [diag.located(t, col)
                     for t in range(trunc) for col, e in enumerate(rnd.trees[t + 1].edges())
                     for diag in e.diagnostics]
            return self.structure.truncate(trunc), pcs, diags
        if trunc == 0:
            return StructureModel.from_order_and_struct_array(list(range(1, d + 1)), []), [], []

        pcs: list[list[PairCopula | None]] = [[None] * (d - 1 - t) for t in range(trunc)]
        edge_diags: dict[tuple[int, int], list[Diagnostic]] = {}
        mat = [[0] * (d - 1 - t) for t in range(trunc)]
        order0 = [0] * d
        trees = [tree.copy() for tree in rnd.trees]

        def place(t: int, col: int, e: _Edge, pos: int) -> None:
            # pos is the position of order0[col] among the conditioned variables.
            if pos == 1:
                e.pair_copula.flip()
            mat[t][col] = e.conditioned[1 - pos]
            pcs[t][col] = e.pair_copula
            edge_diags[(t, col)] = e.diagnostics

        for col in range(d - 1):
            t = max(min(trunc, d - 1 - col), 1)
            chosen, pos = None, 0
            for e in trees[t].edges():
                d0, d1 = trees[t].degree(e.u), trees[t].degree(e.v)
                if min(d0, d1) > 1:
                    continue
                chosen, pos = e, (1 if d1 == 1 else 0)
                break
            if chosen is None:
                raise RuntimeError("no leaf edge left while converting trees to a structure")
            order0[col] = chosen.conditioned[pos]
            place(t - 1, col, chosen, pos)
            conditioning = list(chosen.conditioning)
            trees[t].remove_edge(chosen.u, chosen.v)

            for k in range(1, t):
                check = {order0[col], *conditioning}
                found = next((e for e in trees[t - k].edges() if set(e.all_indices) == check), None)
                if found is None:
                    raise RuntimeError("no matching edge while converting trees to a structure")
                place(t - k - 1, col, found, 1 if order0[col] == found.conditioned[1] else 0)
                conditioning = list(found.conditioning)
                trees[t - k].remove_edge(found.u, found.v)

        order0[d - 1] = mat[0][d - 2]
        order = [x + 1 for x in order0]
        # Relabel variables to positions in the order (natural order).
        position = {var: k for k, var in enumerate(order0)}
        struct = [[position[v] + 1 for v in row] for row in mat]
        structure = StructureModel.from_order_and_struct_array(order, struct)
        diags = [diag.located(t, col) for (t, col), ds in sorted(edge_diags.items()) for diag in ds]
        return structure, pcs, diags
