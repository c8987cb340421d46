# backend.py
# Core computation logic for the optimal samples selection (k-cover) problem.
# Subsets of the n sampled elements are encoded as integer bit masks.
# Three modes: fast (greedy + redundancy pruning), thorough (greedy seed improved by
# exhaustive or local search) and exact (CP-SAT, needs Google OR-Tools).
# A solve runs end to end in a child process and answers through a queue;
# handle_request() is the same pipeline run in-process.

import random
import time
import math
import multiprocessing as mp
import queue # For inter-process communication
from itertools import combinations

# --- OR-Tools CP-SAT Related Imports ---
try:
    from ortools.sat.python import cp_model
    HAS_ORTOOLS = True
except ImportError:
    print("Warning: Failed to import ortools.sat.python.cp_model.")
    print("Exact (CP-SAT) mode will be unavailable. Please ensure Google OR-Tools is installed:")
    print("python -m pip install --upgrade ortools")
    HAS_ORTOOLS = False
# --- OR-Tools Imports End ---

# --- Settings ---
MAX_UNIVERSE = 30                     # Widest universe a subset mask may span
EXHAUSTIVE_CUTOFF = 20                # Up to this many k-subsets, thorough mode searches combinations exhaustively
EXHAUSTIVE_EXTRA_SIZE = 2             # Exhaustive search tries sizes up to len(seed) + this
RANDOM_SEARCH_MAX_ITERATIONS = 1000
RANDOM_SEARCH_MAX_NO_IMPROVEMENT = 100
DEFAULT_TIMEOUT = 60                  # CP-SAT time limit (seconds)
POLL_INTERVAL = 0.1                   # Queue polling period while waiting on a worker process

MODE_FAST = 'fast'
MODE_THOROUGH = 'thorough'
MODE_EXACT = 'exact'
MODES = (MODE_FAST, MODE_THOROUGH, MODE_EXACT)
MODE_ALIASES = {'speed': MODE_FAST, 'greedy': MODE_FAST, 'accurate': MODE_THOROUGH, 'ilp': MODE_EXACT}
MODE_TAGS = {MODE_FAST: 'Greedy', MODE_THOROUGH: 'Improve', MODE_EXACT: 'ILP'}

SUCCESS_STATUSES = ('SUCCESS', 'OPTIMAL', 'FEASIBLE')


# --- Errors ---

class InvalidParameter(ValueError):
    """Malformed or out-of-constraint solve parameters."""


class InfeasibleInstance(RuntimeError):
    """Some j-subset is covered by no k-subset under the given s."""

    def __init__(self, message, uncovered=None):
        super().__init__(message)
        self.uncovered = list(uncovered or [])


class ExecutionFailure(RuntimeError):
    """The background solve process died, timed out or was cancelled before answering."""


# --- Helper Functions ---

def comb(n, k):
    """Calculates combinations C(n, k)"""
    if k < 0 or k > n:
        return 0
    return math.comb(n, k)


def validate_params(n, k, j, s, min_groups=1, m=None):
    """
    Checks the solve preconditions 1 <= s <= j <= k <= n <= MAX_UNIVERSE, min_groups >= 1
    and, when the population size m is given, n <= m.

    Raises:
        InvalidParameter: on the first violated constraint.
    """
    values = {'N': n, 'K': k, 'J': j, 'S': s, 'min_groups': min_groups}
    if m is not None:
        values['M'] = m
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidParameter(f"{name} ({value!r}) must be an integer.")

    if n < 1:
        raise InvalidParameter(f"N ({n}) must be at least 1.")
    if n > MAX_UNIVERSE:
        raise InvalidParameter(f"N ({n}) cannot exceed {MAX_UNIVERSE}, the widest supported universe.")
    if m is not None and n > m:
        raise InvalidParameter(f"N ({n}) cannot be greater than M ({m}).")
    if k > n:
        raise InvalidParameter(f"K ({k}) cannot be greater than N ({n}).")
    if j > k:
        raise InvalidParameter(f"J ({j}) cannot be greater than K ({k}).")
    if s > j:
        raise InvalidParameter(f"S ({s}) cannot be greater than J ({j}).")
    if s < 1:
        raise InvalidParameter(f"S ({s}) must be at least 1.")
    if min_groups < 1:
        raise InvalidParameter(f"min_groups ({min_groups}) must be at least 1.")


def normalize_params(params):
    """
    Turns a request parameter dict into {'m', 'n', 'k', 'j', 's', 'min_groups'}.
    'minGroups' is accepted as an alias of 'min_groups'; 'm' is optional (advisory).
    """
    missing = [key for key in ('n', 'k', 'j', 's') if params.get(key) is None]
    if missing:
        raise InvalidParameter(f"Missing parameter(s): {', '.join(missing)}")

    min_groups = params.get('min_groups', params.get('minGroups', 1))
    normalized = {
        'm': params.get('m'),
        'n': params['n'],
        'k': params['k'],
        'j': params['j'],
        's': params['s'],
        'min_groups': 1 if min_groups is None else min_groups,
    }
    validate_params(normalized['n'], normalized['k'], normalized['j'], normalized['s'],
                    normalized['min_groups'], m=normalized['m'])
    return normalized


def normalize_mode(mode):
    name = str(mode).strip().lower()
    name = MODE_ALIASES.get(name, name)
    if name not in MODES:
        raise InvalidParameter(f"Unknown mode '{mode}'. Expected one of: {', '.join(MODES)}.")
    return name


# --- Subset Enumeration ---

def enum_subsets(n, size):
    """
    Enumerates every size-`size` subset of {0, ..., n-1} as a bit mask.

    Masks come out in backtracking order: at each level the next member is chosen
    in increasing index order, so the result is lexicographic in the member lists.
    size == 0 gives the single empty mask.
    """
    if n < 0 or size < 0 or size > n:
        raise InvalidParameter(f"Cannot choose {size} of {n} elements.")
    if n > MAX_UNIVERSE:
        raise InvalidParameter(f"N ({n}) cannot exceed {MAX_UNIVERSE}.")

    masks = []

    def backtrack(start, mask, count):
        if count == size:
            masks.append(mask)
            return
        # Leave room for the members still to be chosen
        for i in range(start, n - (size - count) + 1):
            backtrack(i + 1, mask | (1 << i), count + 1)

    backtrack(0, 0, 0)
    return masks


def mask_to_members(mask, n):
    """bitmask -> ascending 0-based member list"""
    return [i for i in range(n) if mask & (1 << i)]


# --- Coverage Relation ---

def build_coverage(k_masks, j_masks, s):
    """
    For every k-subset, lists the indices of the j-subsets it covers, i.e. those
    sharing at least `s` elements with it. Index lists are ascending.
    A k-subset with an empty list covers nothing and is never selected.
    """
    coverage = []
    for k_mask in k_masks:
        covered = []
        for idx_j, j_mask in enumerate(j_masks):
            if (k_mask & j_mask).bit_count() >= s:
                covered.append(idx_j)
        coverage.append(covered)
    return coverage


def valid_k_indices(coverage):
    return [idx_k for idx_k, covered in enumerate(coverage) if covered]


def uncovered_j_indices(coverage, num_j):
    """j-subsets that no k-subset can cover (non-empty means the instance is infeasible)."""
    reachable = [False] * num_j
    for covered in coverage:
        for idx_j in covered:
            reachable[idx_j] = True
    return [idx_j for idx_j in range(num_j) if not reachable[idx_j]]


def count_covered(coverage, selection, num_j):
    covered = [False] * num_j
    total = 0
    for idx_k in selection:
        for idx_j in coverage[idx_k]:
            if not covered[idx_j]:
                covered[idx_j] = True
                total += 1
    return total


def is_full_cover(coverage, selection, num_j):
    return count_covered(coverage, selection, num_j) == num_j


def _coverage_counts(coverage, selection, num_j):
    counts = [0] * num_j
    for idx_k in selection:
        for idx_j in coverage[idx_k]:
            counts[idx_j] += 1
    return counts


# --- Scoring ---

def _score(covered_total, size, num_j, min_groups):
    ratio = covered_total / num_j if num_j else 1.0
    if ratio < 1:
        return 1000 + size - ratio * 100
    if size < min_groups:
        return 500 + (min_groups - size) * 100
    return size


def evaluate_solution(coverage, selection, num_j, min_groups=1):
    """
    Scores a selection of k-subset indices; lower is better.

    Incomplete coverage lands in the 1000+ band (closer to complete scores lower),
    a complete cover short of min_groups in the 500+ band, and a complete cover
    meeting the floor scores its own size.
    """
    return _score(count_covered(coverage, selection, num_j), len(selection), num_j, min_groups)


# --- Greedy Algorithm ---

def _by_coverage_size(coverage, candidates):
    # sorted() is stable: equal sizes keep ascending index order
    return sorted(candidates, key=lambda idx_k: -len(coverage[idx_k]))


def greedy_cover(coverage, num_j, min_groups=1):
    """
    Greedy covering with a minimum group count.

    Args:
        coverage: k-subset index -> covered j-subset indices (from build_coverage)
        num_j: number of j-subsets
        min_groups: minimum number of k-subsets in the answer

    Returns:
        list: chosen k-subset indices. Empty when no k-subset covers anything.
        The cover may be incomplete on infeasible instances; check it with
        evaluate_solution() or is_full_cover().
    """
    valid = valid_k_indices(coverage)
    chosen = []
    chosen_set = set()
    covered = [False] * num_j
    uncovered_count = num_j

    # 1. Cover phase: take the k-subset that covers the most still-uncovered j-subsets
    while uncovered_count > 0:
        best_idx = -1
        best_gain = 0
        for idx_k in valid:
            if idx_k in chosen_set:
                continue
            gain = 0
            for idx_j in coverage[idx_k]:
                if not covered[idx_j]:
                    gain += 1
            if gain > best_gain: # Ties keep the lower index
                best_gain = gain
                best_idx = idx_k
        if best_idx == -1:
            break # Nothing left adds coverage
        chosen.append(best_idx)
        chosen_set.add(best_idx)
        for idx_j in coverage[best_idx]:
            if not covered[idx_j]:
                covered[idx_j] = True
                uncovered_count -= 1

    # 2. Floor phase: top up with the strongest remaining k-subsets
    if len(chosen) < min_groups:
        remaining = [idx_k for idx_k in valid if idx_k not in chosen_set]
        for idx_k in _by_coverage_size(coverage, remaining):
            if len(chosen) >= min_groups:
                break
            chosen.append(idx_k)
            chosen_set.add(idx_k)

    if min_groups == 1:
        prune_redundant(chosen, coverage, num_j)
        return chosen

    return extend_unique_coverage(chosen, coverage, num_j, min_groups)


def prune_redundant(selection, coverage, num_j, min_groups=1):
    """
    Removes redundant members in place, scanning from the last added to the first.
    A member is dropped only if everything stays covered without it. Selections
    that do not cover everything are left untouched.
    """
    if len(selection) <= min_groups:
        return selection
    counts = _coverage_counts(coverage, selection, num_j)
    if 0 in counts:
        return selection

    for pos in range(len(selection) - 1, -1, -1):
        if len(selection) <= min_groups:
            break
        idx_k = selection[pos]
        if all(counts[idx_j] > 1 for idx_j in coverage[idx_k]):
            del selection[pos]
            for idx_j in coverage[idx_k]:
                counts[idx_j] -= 1
    return selection


def extend_unique_coverage(chosen, coverage, num_j, min_groups):
    """
    Multi-group extension used when min_groups > 1.

    Scans the unselected valid k-subsets in index order and adds each one that covers
    a j-subset nobody in the selection covers yet. If the result is still below
    min_groups it is padded with the remaining k-subsets of largest coverage.
    """
    counts = _coverage_counts(coverage, chosen, num_j)
    result = list(chosen)
    in_result = set(result)
    valid = valid_k_indices(coverage)

    for idx_k in valid:
        if idx_k in in_result:
            continue
        if any(counts[idx_j] == 0 for idx_j in coverage[idx_k]):
            result.append(idx_k)
            in_result.add(idx_k)
            for idx_j in coverage[idx_k]:
                counts[idx_j] += 1

    if len(result) < min_groups:
        remaining = [idx_k for idx_k in valid if idx_k not in in_result]
        for idx_k in _by_coverage_size(coverage, remaining):
            if len(result) >= min_groups:
                break
            result.append(idx_k)
            in_result.add(idx_k)
    return result


# --- Quality Improvement ---

def improve_solution(coverage, seed, num_j, rand=None, exhaustive_cutoff=EXHAUSTIVE_CUTOFF, run_idx=0):
    """
    Improves a greedy cover (min_groups == 1). Small instances (at most
    `exhaustive_cutoff` k-subsets) get a bounded exhaustive search, larger ones a
    local search. The returned selection never scores worse than `seed`.

    Args:
        rand (random.Random, optional): generator for the randomized moves; pass a
            seeded instance for reproducible runs.
    """
    if len(coverage) <= exhaustive_cutoff:
        print(f"[Improve-{run_idx}] {len(coverage)} k-subsets: exhaustive combination search from a seed of {len(seed)}.")
        return exhaustive_search(coverage, seed, num_j)
    print(f"[Improve-{run_idx}] {len(coverage)} k-subsets: local search from a seed of {len(seed)}.")
    return local_search(coverage, seed, num_j, rand=rand)


def exhaustive_search(coverage, seed, num_j, extra_size=EXHAUSTIVE_EXTRA_SIZE):
    """
    Tries every combination of 1 .. len(seed) + extra_size k-subsets, seed members
    first, and keeps the best scoring one. Sizes grow monotonically, so the search
    stops as soon as no larger combination can beat the best score.
    """
    best = list(seed)
    seed_score = best_score = evaluate_solution(coverage, best, num_j)
    in_seed = set(seed)
    candidates = list(seed) + [idx_k for idx_k in valid_k_indices(coverage) if idx_k not in in_seed]

    for size in range(1, len(seed) + extra_size + 1):
        if size > len(candidates) or best_score <= size:
            break # Any combination of this size scores at least `size`
        tight = False
        for combo in combinations(candidates, size):
            score = evaluate_solution(coverage, combo, num_j)
            if score < best_score:
                best, best_score = list(combo), score
            if score == size and score < seed_score:
                tight = True
                break
        if tight:
            break
    return best


def local_search(coverage, seed, num_j, rand=None,
                 max_iterations=RANDOM_SEARCH_MAX_ITERATIONS,
                 max_no_improvement=RANDOM_SEARCH_MAX_NO_IMPROVEMENT):
    """
    Single-substitution pass over the seed, then a randomized neighbourhood search,
    then redundancy pruning. Never returns something worse than the seed.
    """
    rand = rand if rand is not None else random.Random()
    valid = valid_k_indices(coverage)
    best = list(seed)
    in_best = set(best)
    counts = _coverage_counts(coverage, best, num_j)
    covered_total = num_j - counts.count(0)
    best_score = _score(covered_total, len(best), num_j, 1)

    # 1. Substitute each member with every unselected valid k-subset, keep strict gains
    for pos in range(len(best)):
        old = best[pos]
        old_set = set(coverage[old])
        lost = sum(1 for idx_j in old_set if counts[idx_j] == 1)
        for candidate in valid:
            if candidate in in_best:
                continue
            gained = sum(1 for idx_j in coverage[candidate]
                         if counts[idx_j] == 0 or (counts[idx_j] == 1 and idx_j in old_set))
            score = _score(covered_total - lost + gained, len(best), num_j, 1)
            if score < best_score:
                for idx_j in coverage[old]:
                    counts[idx_j] -= 1
                for idx_j in coverage[candidate]:
                    counts[idx_j] += 1
                best[pos] = candidate
                in_best.discard(old)
                in_best.add(candidate)
                covered_total = covered_total - lost + gained
                best_score = score
                old = candidate
                old_set = set(coverage[old])
                lost = sum(1 for idx_j in old_set if counts[idx_j] == 1)
    prune_redundant(best, coverage, num_j)

    # 2. Randomized neighbourhood moves on top of the substituted cover
    best = random_neighbourhood_search(coverage, best, num_j, rand,
                                       max_iterations=max_iterations,
                                       max_no_improvement=max_no_improvement)
    prune_redundant(best, coverage, num_j)
    return best


def _repair(selection, coverage, num_j, valid):
    # Greedily re-cover whatever the selection leaves uncovered
    counts = _coverage_counts(coverage, selection, num_j)
    in_selection = set(selection)
    while 0 in counts:
        best_idx, best_gain = -1, 0
        for idx_k in valid:
            if idx_k in in_selection:
                continue
            gain = sum(1 for idx_j in coverage[idx_k] if counts[idx_j] == 0)
            if gain > best_gain:
                best_idx, best_gain = idx_k, gain
        if best_idx == -1:
            break
        selection.append(best_idx)
        in_selection.add(best_idx)
        for idx_j in coverage[best_idx]:
            counts[idx_j] += 1
    return selection


def random_neighbourhood_search(coverage, seed, num_j, rand,
                                max_iterations=RANDOM_SEARCH_MAX_ITERATIONS,
                                max_no_improvement=RANDOM_SEARCH_MAX_NO_IMPROVEMENT):
    """
    Random drop / swap / add moves, each followed by greedy repair and pruning.
    Moves that do not worsen the current selection are accepted (so the walk can
    cross plateaus); the best selection seen is returned.
    """
    valid = valid_k_indices(coverage)
    best = list(seed)
    best_score = evaluate_solution(coverage, best, num_j)
    current, current_score = list(best), best_score
    no_improvement = 0

    for _ in range(max_iterations):
        if no_improvement >= max_no_improvement:
            break
        trial = list(current)
        in_trial = set(trial)
        unused = [idx_k for idx_k in valid if idx_k not in in_trial]
        roll = rand.random()
        if roll < 0.5 and len(trial) > 1:
            del trial[rand.randrange(len(trial))]
        elif roll < 0.8 and trial and unused:
            trial[rand.randrange(len(trial))] = rand.choice(unused)
        elif unused:
            trial.append(rand.choice(unused))
        else:
            no_improvement += 1
            continue

        _repair(trial, coverage, num_j, valid)
        prune_redundant(trial, coverage, num_j)
        score = evaluate_solution(coverage, trial, num_j)
        if score <= current_score:
            current, current_score = trial, score
        if score < best_score:
            best, best_score = list(trial), score
            no_improvement = 0
        else:
            no_improvement += 1
    return best


# --- CP-SAT (ILP) Solver ---

def cpsat_cover(coverage, num_j, min_groups=1, time_limit=DEFAULT_TIMEOUT, hint=None, run_idx=0):
    """
    Minimum cover with OR-Tools CP-SAT: one boolean per valid k-subset, every
    j-subset covered at least once, at least min_groups chosen (capped at the
    number of valid k-subsets).

    Args:
        time_limit: solver time limit in seconds
        hint: optional selection (e.g. the greedy one) used as a solution hint

    Returns:
        tuple: (selection, status) where status is one of OPTIMAL, FEASIBLE,
        INFEASIBLE, UNKNOWN, MODEL_INVALID or ERROR_MISSING_ORTOOLS.
    """
    if not HAS_ORTOOLS:
        return [], 'ERROR_MISSING_ORTOOLS'

    valid = valid_k_indices(coverage)
    covering = [[] for _ in range(num_j)]
    for idx_k in valid:
        for idx_j in coverage[idx_k]:
            covering[idx_j].append(idx_k)
    if any(not ks for ks in covering):
        print(f"[ILP-{run_idx}] Some j-subset has no covering k-subset; model is infeasible.")
        return [], 'INFEASIBLE'

    model = cp_model.CpModel()
    x = {idx_k: model.NewBoolVar(f'x_{idx_k}') for idx_k in valid}
    for ks in covering:
        model.Add(sum(x[idx_k] for idx_k in ks) >= 1)
    model.Add(sum(x.values()) >= min(min_groups, len(valid)))
    model.Minimize(sum(x.values()))

    if hint:
        hinted = set(hint)
        for idx_k, var in x.items():
            model.AddHint(var, idx_k in hinted)

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = float(time_limit)
    try:
        solver.parameters.num_search_workers = max(1, mp.cpu_count() // 2)
    except NotImplementedError:
        solver.parameters.num_search_workers = 1

    print(f"[ILP-{run_idx}] Solving with {len(x)} variables and {num_j} cover constraints, limit {float(time_limit):.1f}s...")
    status = solver.Solve(model)
    status_map = {
        cp_model.OPTIMAL: 'OPTIMAL',
        cp_model.FEASIBLE: 'FEASIBLE',
        cp_model.INFEASIBLE: 'INFEASIBLE',
        cp_model.MODEL_INVALID: 'MODEL_INVALID',
        cp_model.UNKNOWN: 'UNKNOWN',
    }
    status_name = status_map.get(status, f'UNMAPPED_STATUS_{status}')
    print(f"[ILP-{run_idx}] Solver finished in {solver.WallTime():.2f}s, status {status_name}.")

    if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        return [idx_k for idx_k in valid if solver.Value(x[idx_k]) == 1], status_name
    return [], status_name


# --- Result Formatting ---

def materialize(selection, k_masks, n):
    """Selected k-subset indices -> ascending 1-based element lists."""
    return [[i + 1 for i in mask_to_members(k_masks[idx_k], n)] for idx_k in selection]


def format_results(groups):
    """Two-digit, zero-padded rendering of each element."""
    return [[f"{num:02d}" for num in group] for group in groups]


def map_to_universe(groups, univ):
    """Replaces 1-based positions with the sampled values they stand for."""
    return [[univ[pos - 1] for pos in group] for group in groups]


def require_complete(result):
    """Raises InfeasibleInstance unless the solve result covers every j-subset."""
    if result.get('status') not in SUCCESS_STATUSES:
        raise InfeasibleInstance(
            result.get('error_message') or f"Solve finished with status {result.get('status')}.",
            uncovered=result.get('uncovered_j', []))
    return result


# --- Solve Pipeline ---

def _thorough_selection(coverage, num_j, min_groups, rand, run_idx):
    if min_groups > 1:
        # The multi-group extension already is the higher-effort answer
        return greedy_cover(coverage, num_j, min_groups)
    seed = greedy_cover(coverage, num_j, 1)
    return improve_solution(coverage, seed, num_j, rand=rand, run_idx=run_idx)


def solve(params, mode=MODE_FAST, rand_seed=None, time_limit=DEFAULT_TIMEOUT, run_idx=0):
    """
    Runs the full pipeline: enumerate, build coverage, select, materialize.

    Args:
        params (dict): n, k, j, s, min_groups (or minGroups), optionally m
        mode (str): fast, thorough or exact
        rand_seed (int, optional): seed for the randomized search in thorough mode
        time_limit: CP-SAT time limit for exact mode (seconds)
        run_idx (int): run identifier used in log lines

    Returns:
        dict: result with keys alg, mode, status, sets (1-based groups), indices,
        score, time and coverage statistics. status is SUCCESS (or OPTIMAL /
        FEASIBLE in exact mode) for a complete cover and INFEASIBLE when some
        j-subset cannot be covered at all.

    Raises:
        InvalidParameter: before any enumeration work.
    """
    start_time = time.time()
    params = normalize_params(params)
    mode = normalize_mode(mode)
    n, k, j, s, min_groups = params['n'], params['k'], params['j'], params['s'], params['min_groups']
    tag = f"[{MODE_TAGS[mode]}-{run_idx}]"
    result = {'alg': MODE_TAGS[mode], 'mode': mode, 'status': 'INIT', 'sets': [], 'indices': [],
              'time': 0, 'min_groups': min_groups, 'run_index': run_idx}

    print(f"{tag} Starting: N={n}, K={k}, J={j}, S={s}, min_groups={min_groups}, mode={mode}")

    k_masks = enum_subsets(n, k)
    j_masks = enum_subsets(n, j)
    num_j = len(j_masks)
    coverage = build_coverage(k_masks, j_masks, s)
    valid_count = len(valid_k_indices(coverage))
    result.update(k_subsets_total=len(k_masks), j_subsets_total=num_j, valid_k_subsets=valid_count)
    print(f"{tag} Generated {len(k_masks)} k-subsets and {num_j} j-subsets; {valid_count} k-subsets cover at least one j-subset.")

    uncovered = uncovered_j_indices(coverage, num_j)
    if uncovered:
        print(f"{tag} Warning: {len(uncovered)} j-subsets cannot be covered by any k-subset.")

    rand = random.Random(rand_seed)
    if mode == MODE_FAST:
        selection = greedy_cover(coverage, num_j, min_groups)
    elif mode == MODE_THOROUGH:
        selection = _thorough_selection(coverage, num_j, min_groups, rand, run_idx)
    else:
        greedy = greedy_cover(coverage, num_j, min_groups)
        selection, solver_status = cpsat_cover(coverage, num_j, min_groups, time_limit=time_limit,
                                               hint=greedy, run_idx=run_idx)
        result['solver_status'] = solver_status
        if not selection or evaluate_solution(coverage, selection, num_j, min_groups) > \
                evaluate_solution(coverage, greedy, num_j, min_groups):
            print(f"{tag} CP-SAT gave no usable cover ({solver_status}); using the thorough search instead.")
            selection = _thorough_selection(coverage, num_j, min_groups, rand, run_idx)
            result['alg'] = MODE_TAGS[MODE_THOROUGH]

    covered_total = count_covered(coverage, selection, num_j)
    result['indices'] = list(selection)
    result['sets'] = materialize(selection, k_masks, n)
    result['score'] = evaluate_solution(coverage, selection, num_j, min_groups)
    result['j_subsets_covered'] = covered_total

    if uncovered:
        result['status'] = 'INFEASIBLE'
        result['uncovered_j'] = uncovered
        result['error_message'] = f"{len(uncovered)} of {num_j} j-subsets cannot be covered with S={s}."
    elif covered_total < num_j:
        result['status'] = 'FAILED_INCOMPLETE_COVER'
        result['error_message'] = f"Only {covered_total} of {num_j} j-subsets are covered."
    elif result.get('solver_status') in ('OPTIMAL', 'FEASIBLE') and result['alg'] == MODE_TAGS[MODE_EXACT]:
        result['status'] = result['solver_status']
    else:
        result['status'] = 'SUCCESS'

    result['time'] = time.time() - start_time
    print(f"{tag} Finished with status {result['status']}: {len(selection)} groups, "
          f"{covered_total}/{num_j} j-subsets covered, {result['time']:.2f}s.")
    return result


# --- Background Execution ---

def handle_request(request):
    """
    Answers one solve request message {params, mode, ...} with a response message:
    {'success': True, 'results', 'count', 'status', 'result'} or
    {'success': False, 'error', 'error_type'}. Never raises.
    """
    run_idx = request.get('run_index', 0)
    try:
        result = solve(request.get('params') or {},
                       request.get('mode', MODE_FAST),
                       rand_seed=request.get('seed'),
                       time_limit=request.get('time_limit', DEFAULT_TIMEOUT),
                       run_idx=run_idx)
    except InvalidParameter as e:
        print(f"[RUN-{run_idx}] Parameter error: {e}")
        return {'success': False, 'error': str(e), 'error_type': 'InvalidParameter'}
    except MemoryError:
        print(f"[RUN-{run_idx}] Memory Error: Insufficient memory during calculation.")
        return {'success': False, 'error': 'Memory error during execution.', 'error_type': 'MemoryError'}
    except Exception as e:
        print(f"[RUN-{run_idx}] Error during solve: {e}")
        import traceback
        traceback.print_exc()
        return {'success': False, 'error': str(e), 'error_type': type(e).__name__}

    formatted = format_results(result['sets'])
    return {'success': True, 'results': formatted, 'count': len(formatted),
            'status': result['status'], 'result': result}


def _solve_worker(q, request):
    # Child process entry point: exactly one message goes back on the queue
    response = {'success': False, 'error': 'Worker did not produce a response.', 'error_type': 'ExecutionFailure'}
    try:
        response = handle_request(request)
    finally:
        try:
            q.put(response)
        except Exception as qe:
            print(f"[RUN-{request.get('run_index', 0)}] Error: Could not put result into queue: {qe}")


class BackgroundSolve:
    """
    One solve request running in its own child process.

    start() launches the process, wait() blocks the calling thread (not the UI
    thread, if the caller runs it from a worker thread) until the single response
    arrives, cancel() terminates the process and discards its work.
    """
    def __init__(self, params, mode=MODE_FAST, rand_seed=None, time_limit=DEFAULT_TIMEOUT, run_idx=0):
        self.request = {'params': dict(params), 'mode': mode, 'seed': rand_seed,
                        'time_limit': time_limit, 'run_index': run_idx}
        self.run_idx = run_idx
        self.q = None
        self.process = None
        self.response = None
        self.cancelled = False

    def start(self):
        if self.cancelled:
            raise ExecutionFailure("Solve was cancelled before it started.")
        self.q = mp.Queue()
        self.process = mp.Process(target=_solve_worker, args=(self.q, self.request), daemon=True)
        self.process.start()
        print(f"[RUN-{self.run_idx}] Started solve process (PID: {self.process.pid}, mode={self.request['mode']})")
        if self.cancelled:
            # cancel() arrived while the process was starting and found nothing alive
            self.cancel()
        return self

    def run(self, timeout=None, fallback=True):
        """
        start() followed by wait(). If no process can be started and `fallback`
        is set, the request is answered in the calling thread instead.

        Raises:
            ExecutionFailure: see wait(); also when cancelled before starting, or
                when the process cannot be started and `fallback` is off.
        """
        try:
            self.start()
        except ExecutionFailure:
            raise
        except (OSError, RuntimeError, ValueError) as e:
            if not fallback:
                raise ExecutionFailure(f"Could not start solve process: {e}") from e
            print(f"[RUN-{self.run_idx}] Could not start solve process ({e}); solving in-process.")
            return handle_request(self.request)
        return self.wait(timeout)

    def is_alive(self):
        return self.process is not None and self.process.is_alive()

    def wait(self, timeout=None):
        """
        Returns the worker's response message.

        Raises:
            ExecutionFailure: if the process exits without answering, is cancelled,
                or `timeout` seconds pass (the process is then terminated).
        """
        if self.process is None:
            raise ExecutionFailure("Solve process was never started.")
        deadline = None if timeout is None else time.time() + timeout

        while self.response is None:
            try:
                self.response = self.q.get(timeout=POLL_INTERVAL)
                break
            except queue.Empty:
                pass
            if not self.process.is_alive():
                # The message may still be in flight from a process that just exited
                try:
                    self.response = self.q.get(timeout=POLL_INTERVAL)
                    break
                except queue.Empty:
                    if self.cancelled:
                        raise ExecutionFailure("Solve was cancelled before it finished.")
                    raise ExecutionFailure(
                        f"Solve process exited (code {self.process.exitcode}) without a response.")
            if deadline is not None and time.time() >= deadline:
                self.cancel()
                raise ExecutionFailure(f"No response within {timeout:.1f} seconds; solve cancelled.")

        self.process.join(timeout=1.0)
        return self.response

    def cancel(self):
        self.cancelled = True
        p = self.process
        if p is None or not p.is_alive():
            return
        print(f"[RUN-{self.run_idx}] Terminating solve process (PID {p.pid})...")
        p.terminate() # Send SIGTERM
        p.join(timeout=1.0)
        if p.is_alive():
            p.kill() # Send SIGKILL
            p.join(timeout=0.5)


def solve_in_background(params, mode=MODE_FAST, rand_seed=None, time_limit=DEFAULT_TIMEOUT,
                        run_idx=0, timeout=None, fallback=True):
    """
    Runs one solve in a child process and returns its response message.
    If no process can be started and `fallback` is set, the same pipeline runs
    in the calling thread instead.
    """
    handle = BackgroundSolve(params, mode, rand_seed=rand_seed, time_limit=time_limit, run_idx=run_idx)
    return handle.run(timeout, fallback=fallback)


# --- Sample Class: Organizes computation tasks ---
class Sample:
    """
    One run: draws (or receives) the n sampled values out of 1..M, solves in the
    background, and maps the chosen groups back onto the sampled values.
    """
    def __init__(self, m, n, k, j, s, min_groups=1, run_idx=0, mode=MODE_FAST,
                 timeout=DEFAULT_TIMEOUT, rand_instance=None, use_process=True, wait_timeout=None):
        """
        Args:
            m (int): Size of the base set {1, ..., m}
            n (int): Number of sampled values (universe size)
            k (int): Size of each selected group
            j (int): Size of the subsets that must be covered
            s (int): Minimum shared elements for a group to cover a j-subset
            min_groups (int): Minimum number of groups in the answer
            run_idx (int): Run identifier (from the database)
            mode (str): fast, thorough or exact
            timeout (int): CP-SAT time limit in exact mode (seconds)
            rand_instance (random.Random, optional): generator for sampling and search seeds
            use_process (bool): solve in a child process (False runs in the calling thread)
            wait_timeout (float, optional): give up on the child process after this many seconds
        """
        validate_params(n, k, j, s, min_groups, m=m)
        self.m = m
        self.n = n
        self.k = k
        self.j = j
        self.s = s
        self.min_groups = min_groups
        self.run_idx = run_idx
        self.mode = normalize_mode(mode)
        self.timeout = timeout
        self.rand = rand_instance if rand_instance else random.Random()
        self.use_process = use_process
        self.wait_timeout = wait_timeout

        self.univ = []        # Sampled values, ascending
        self.result = {}      # Result dict of the solve
        self.indices = []     # Chosen groups as 1-based positions in univ
        self.sets = []        # Chosen groups as sampled values
        self.ans = None       # Result identifier m-n-k-j-s-run-count
        self.cancelled = False
        self._handle = None

        print(f"[Sample-{self.run_idx}] Initializing instance: M={m}, N={n}, K={k}, J={j}, S={s}, "
              f"min_groups={min_groups}, mode={self.mode}")

    def draw_universe(self):
        self.univ = sorted(self.rand.sample(range(1, self.m + 1), self.n))
        return self.univ

    def set_universe(self, values):
        values = list(values)
        if len(values) != self.n:
            raise InvalidParameter(f"Expected {self.n} numbers, but got {len(values)}.")
        if len(set(values)) != len(values):
            raise InvalidParameter("Universe contains duplicates.")
        invalid = [x for x in values if not (1 <= x <= self.m)]
        if invalid:
            raise InvalidParameter(f"Numbers must be between 1 and {self.m}. Invalid: {invalid}")
        self.univ = sorted(values)
        return self.univ

    def params(self):
        return {'m': self.m, 'n': self.n, 'k': self.k, 'j': self.j, 's': self.s, 'min_groups': self.min_groups}

    def run(self):
        """
        Solves and fills result, indices, sets and ans. Failures are recorded in
        result['status'] / result['error_message'] rather than raised.
        """
        if len(self.univ) != self.n:
            self.draw_universe()
            print(f"[RUN-{self.run_idx}] Universe not provided, generated: {self.univ}")

        rand_seed = self.rand.randrange(2 ** 32)
        time_start_run = time.time()
        try:
            if self.cancelled:
                raise ExecutionFailure("Run was cancelled before it started.")
            if self.use_process:
                self._handle = BackgroundSolve(self.params(), self.mode, rand_seed=rand_seed,
                                               time_limit=self.timeout, run_idx=self.run_idx)
                # cancel() may have run before the handle existed
                if self.cancelled:
                    self._handle.cancel()
                response = self._handle.run(self.wait_timeout)
            else:
                response = handle_request({'params': self.params(), 'mode': self.mode, 'seed': rand_seed,
                                           'time_limit': self.timeout, 'run_index': self.run_idx})
        except ExecutionFailure as e:
            print(f"[RUN-{self.run_idx}] Execution failure: {e}")
            response = {'success': False, 'error': str(e), 'error_type': 'ExecutionFailure'}
        finally:
            self._handle = None

        if not response.get('success'):
            status = 'ERROR_EXECUTION' if response.get('error_type') == 'ExecutionFailure' else 'ERROR'
            self.result = {'status': status, 'alg': 'None', 'mode': self.mode, 'sets': [],
                           'time': time.time() - time_start_run, 'run_index': self.run_idx,
                           'error_message': response.get('error')}
            self.indices = []
            self.sets = []
            self.ans = f"Fail({status}):{self.m}-{self.n}-{self.k}-{self.j}-{self.s}-{self.run_idx}-0"
            print(f"[RUN-{self.run_idx}] Failed: {response.get('error')}. Ans set to: {self.ans}")
            return

        self.result = response['result']
        self.indices = self.result['sets']
        self.sets = map_to_universe(self.indices, self.univ)
        self.ans = f"{self.m}-{self.n}-{self.k}-{self.j}-{self.s}-{self.run_idx}-{len(self.sets)}"

        print(f"[RUN-{self.run_idx}] ---- Final Result Summary ----")
        print(f"[RUN-{self.run_idx}] Algorithm: {self.result.get('alg')} ({self.mode})")
        print(f"[RUN-{self.run_idx}] Status: {self.result.get('status')}")
        print(f"[RUN-{self.run_idx}] Algorithm Time: {self.result.get('time', 0):.2f}s")
        print(f"[RUN-{self.run_idx}] Total Run Time: {time.time() - time_start_run:.2f}s")
        print(f"[RUN-{self.run_idx}] Sets Found: {len(self.sets)}")
        print(f"[RUN-{self.run_idx}] Result ID (ans): {self.ans}")

    def cancel(self):
        """
        Stops a run in progress, or one about to start; the run then finishes
        with status ERROR_EXECUTION. In-process runs (use_process=False) can
        only be cancelled before they start.
        """
        self.cancelled = True
        handle = self._handle
        if handle is not None:
            handle.cancel()


# --- Main Program Entry Point (for testing backend.py directly) ---
if __name__ == '__main__':
    print("backend.py executed directly. Running the standard test cases...")
    test_cases = [
        ({'m': 45, 'n': 8, 'k': 6, 'j': 4, 's': 4, 'min_groups': 1}, MODE_FAST),
        ({'m': 45, 'n': 8, 'k': 6, 'j': 4, 's': 4, 'min_groups': 4}, MODE_FAST),
        ({'m': 45, 'n': 8, 'k': 6, 'j': 6, 's': 5, 'min_groups': 1}, MODE_THOROUGH),
        ({'m': 45, 'n': 8, 'k': 6, 'j': 6, 's': 5, 'min_groups': 4}, MODE_THOROUGH),
    ]
    test_random_instance = random.Random(0) # Fixed seed
    for run_idx, (test_params, test_mode) in enumerate(test_cases, start=1):
        sample_instance = Sample(test_params['m'], test_params['n'], test_params['k'], test_params['j'],
                                 test_params['s'], test_params['min_groups'], run_idx=run_idx,
                                 mode=test_mode, rand_instance=test_random_instance)
        sample_instance.run()
        for i, found_set in enumerate(sample_instance.sets[:20], start=1):
            print(f"  Set {i}: {found_set}")
