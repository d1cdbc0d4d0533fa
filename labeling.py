"""
labeling.py - Label optimization by expansion moves over a fixed model set

Each move picks one label (a plane model or the outlier sentinel) and lets a
binary oracle decide which points switch to it. Moves are kept only when the
total energy strictly decreases, so a pass never increases the energy.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import breadth_first_order, maximum_flow

from energy import EnergyModel
from logger import Logger
from primitives import OUTLIER

LOG = Logger.get_logger("labeling")

# Binary labeling oracle: unary (n, 2), edges (m, 2), pairwise (m, 4) as
# [E00, E01, E10, E11] -> bool mask of nodes taking label 1.
BinaryOracle = Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]

_MAX_CAPACITY = float(2 ** 24)
_MAX_TOTAL = float(2 ** 30)


# =============================================================================
# Binary oracles
# =============================================================================

def _add_linear(src: np.ndarray, snk: np.ndarray, idx: np.ndarray, coef: np.ndarray) -> None:
    """Add coef * x_idx: positive part is paid when x=1 (source edge), negative when x=0."""
    pos = coef > 0
    np.add.at(src, idx[pos], coef[pos])
    np.add.at(snk, idx[~pos], -coef[~pos])


def graph_cut_oracle(unary: np.ndarray, edges: np.ndarray, pairwise: np.ndarray) -> np.ndarray:
    """
    Exact minimizer of a submodular binary energy by s-t minimum cut.

    Nodes on the sink side of the cut take label 1. Capacities are scaled to
    integers for scipy's maximum_flow, so the cut is optimal up to rounding.
    """
    n = int(unary.shape[0])
    if n == 0:
        return np.zeros((0,), dtype=bool)
    edges = np.asarray(edges, dtype=int).reshape(-1, 2)
    pairwise = np.asarray(pairwise, dtype=float).reshape(-1, 4)

    src = unary[:, 1].astype(float).copy()
    snk = unary[:, 0].astype(float).copy()
    p, q = edges[:, 0], edges[:, 1]
    e00, e01, e10, e11 = pairwise.T
    _add_linear(src, snk, p, e10 - e00)
    _add_linear(src, snk, q, e11 - e10)
    pq = np.clip(e01 + e10 - e00 - e11, 0.0, None)

    shift = np.minimum(src, snk)
    src -= shift
    snk -= shift

    max_cap = max(float(src.max(initial=0.0)), float(snk.max(initial=0.0)), float(pq.max(initial=0.0)))
    total = float(src.sum() + snk.sum() + pq.sum())
    if max_cap <= 0:
        return np.zeros(n, dtype=bool)
    factor = min(_MAX_CAPACITY / max_cap, _MAX_TOTAL / max(total, 1e-12))

    s, t = n, n + 1
    nodes = np.arange(n)
    rows = np.concatenate([np.full(n, s), nodes, p])
    cols = np.concatenate([nodes, np.full(n, t), q])
    data = np.rint(np.concatenate([src, snk, pq]) * factor).astype(np.int64)
    keep = data > 0
    graph = csr_matrix(
        (data[keep].astype(np.int32), (rows[keep], cols[keep])),
        shape=(n + 2, n + 2),
    )
    graph.sum_duplicates()
    graph.sort_indices()
    if graph.nnz == 0:
        return np.zeros(n, dtype=bool)

    flow = maximum_flow(graph, s, t).flow
    residual = csr_matrix(graph - flow)
    residual.data[residual.data < 0] = 0
    residual.eliminate_zeros()

    reachable = breadth_first_order(residual, s, directed=True, return_predecessors=False)
    take = np.ones(n, dtype=bool)
    reachable = reachable[reachable < n]
    take[reachable] = False
    return take


def icm_oracle(
    unary: np.ndarray,
    edges: np.ndarray,
    pairwise: np.ndarray,
    *,
    max_sweeps: int = 10,
) -> np.ndarray:
    """Iterated conditional modes: greedy per-node updates until no node changes."""
    n = int(unary.shape[0])
    x = unary[:, 1] < unary[:, 0]
    if n == 0 or len(edges) == 0:
        return x
    edges = np.asarray(edges, dtype=int).reshape(-1, 2)
    pairwise = np.asarray(pairwise, dtype=float).reshape(-1, 4)

    # Incidence lists: for each node, (neighbor, table) with the node as first index.
    heads = np.concatenate([edges[:, 0], edges[:, 1]])
    tails = np.concatenate([edges[:, 1], edges[:, 0]])
    # Swap E01/E10 when the node is the second endpoint.
    tables = np.concatenate([pairwise, pairwise[:, [0, 2, 1, 3]]])
    order = np.argsort(heads, kind="stable")
    heads, tails, tables = heads[order], tails[order], tables[order]
    starts = np.searchsorted(heads, np.arange(n + 1))

    for _ in range(int(max_sweeps)):
        changed = 0
        for node in range(n):
            lo, hi = starts[node], starts[node + 1]
            nbr = x[tails[lo:hi]].astype(int)
            tab = tables[lo:hi]
            cost0 = unary[node, 0] + tab[np.arange(hi - lo), nbr].sum()
            cost1 = unary[node, 1] + tab[np.arange(hi - lo), 2 + nbr].sum()
            new = bool(cost1 < cost0)
            if new != x[node]:
                x[node] = new
                changed += 1
        if changed == 0:
            break
    return x


ORACLES: Dict[str, BinaryOracle] = {
    "graphcut": graph_cut_oracle,
    "icm": icm_oracle,
}


# =============================================================================
# Expansion moves
# =============================================================================

def _enforce_min_support(
    labels: np.ndarray,
    alpha: int,
    min_support: int,
) -> Optional[np.ndarray]:
    """Send leftover points of under-supported models to outlier; None if alpha is under-supported."""
    ids, counts = np.unique(labels[labels != OUTLIER], return_counts=True)
    small = ids[counts < min_support]
    if alpha != OUTLIER and alpha in small:
        return None
    if small.size:
        labels[np.isin(labels, small)] = OUTLIER
    return labels


def expansion_move(
    labels: np.ndarray,
    alpha: int,
    costs: Mapping[int, np.ndarray],
    energy_model: EnergyModel,
    oracle: BinaryOracle,
    *,
    min_support: int = 1,
) -> Optional[np.ndarray]:
    """
    Propose a labeling where some points switch to alpha.

    Returns the proposed labels, or None when no point can profitably switch.
    """
    graph = energy_model.graph
    unary_now = energy_model.unary(labels, costs)
    if alpha == OUTLIER:
        cost_alpha = np.full(len(labels), energy_model.outlier_penalty, dtype=float)
    else:
        cost_alpha = costs[alpha]

    # A point gains at most its data cost difference plus all its edge weights.
    free = (labels != alpha) & (cost_alpha <= unary_now + energy_model.weighted_degree)
    free_idx = np.flatnonzero(free)
    if free_idx.size == 0:
        return None

    local = np.full(len(labels), -1, dtype=int)
    local[free_idx] = np.arange(free_idx.size)
    unary = np.column_stack([unary_now[free_idx], cost_alpha[free_idx]])

    edges = graph.edges
    w = energy_model.edge_weights
    if edges.size:
        a, b = edges[:, 0], edges[:, 1]
        fa, fb = free[a], free[b]
        la, lb = labels[a], labels[b]

        # Free point next to a fixed one: the edge cost only depends on the free side.
        for this, that, mask in ((a, b, fa & ~fb), (b, a, fb & ~fa)):
            if np.any(mask):
                node = local[this[mask]]
                other = labels[that[mask]]
                np.add.at(unary[:, 0], node, w[mask] * (labels[this[mask]] != other))
                np.add.at(unary[:, 1], node, w[mask] * (other != alpha))

        both = fa & fb
        pair_edges = np.column_stack([local[a[both]], local[b[both]]])
        wb = w[both]
        pairwise = np.column_stack([
            wb * (la[both] != lb[both]),
            wb,
            wb,
            np.zeros_like(wb),
        ])
    else:
        pair_edges = np.empty((0, 2), dtype=int)
        pairwise = np.empty((0, 4), dtype=float)

    take = oracle(unary, pair_edges, pairwise)
    if not np.any(take):
        return None

    proposal = labels.copy()
    proposal[free_idx[take]] = alpha
    return _enforce_min_support(proposal, alpha, int(min_support))


@dataclass
class LabelingStats:
    """Summary of one label optimization run."""
    passes: int
    accepted_moves: int
    energy: float
    converged: bool


def optimize_labels(
    labels: np.ndarray,
    model_ids: Sequence[int],
    costs: Mapping[int, np.ndarray],
    energy_model: EnergyModel,
    *,
    oracle: BinaryOracle = graph_cut_oracle,
    min_support: int = 1,
    max_passes: int = 10,
) -> LabelingStats:
    """
    Minimize the energy over labels in place with expansion moves.

    Every model in model_ids, then the outlier sentinel, is expanded in turn.
    Stops after a full pass without an accepted move (converged) or max_passes.
    """
    energy = energy_model.total(labels, costs)
    order = [int(m) for m in model_ids] + [OUTLIER]
    accepted_total = 0
    passes = 0
    converged = False

    for passes in range(1, int(max_passes) + 1):
        accepted = 0
        for alpha in order:
            proposal = expansion_move(
                labels, alpha, costs, energy_model, oracle, min_support=min_support
            )
            if proposal is None:
                continue
            new_energy = energy_model.total(proposal, costs)
            if new_energy < energy - 1e-9 * max(1.0, abs(energy)):
                labels[:] = proposal
                energy = new_energy
                accepted += 1
        accepted_total += accepted
        LOG.debug(f"  Label pass {passes}: {accepted} moves accepted, energy={energy:.4f}")
        if accepted == 0:
            converged = True
            break

    return LabelingStats(
        passes=passes,
        accepted_moves=accepted_total,
        energy=float(energy),
        converged=converged,
    )
