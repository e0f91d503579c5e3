#!/usr/bin/env python
"""
Benchmark for torch-bcg block sizes.

Solves a 2D Poisson problem with many right-hand sides and compares block
sizes (1 = one scalar CG per right-hand side) in iterations, wall time and
final residual.

Usage:
    python benchmark_block_cg.py                 # Run the benchmark
    python benchmark_block_cg.py --only-plot     # Only regenerate plots from cached data
    python benchmark_block_cg.py --grid 128 --nrhs 32
"""

import argparse
import gc
import json
import os
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

import torch

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import torch_bcg as bcg
from torch_bcg.gallery import poisson_2d

# Output directories
OUTPUT_DIR = Path(__file__).parent / "results" / "benchmark_block_cg"
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)


@dataclass
class BenchmarkResult:
    """Result of a single benchmark run."""
    block_size: int
    kernel: str
    preconditioner: str
    dof: int
    nrhs: int
    time_ms: float
    num_iters: int
    residual: float
    success: bool
    error_msg: Optional[str] = None


def reset_cuda():
    """Reset CUDA state."""
    if torch.cuda.is_available():
        torch.cuda.synchronize()
        torch.cuda.empty_cache()
    gc.collect()


def compute_residual(A, X, B) -> float:
    """Largest relative residual ||B - AX|| / ||B|| over the columns."""
    R = B - A(X)
    return (torch.linalg.vector_norm(R, dim=0) / torch.linalg.vector_norm(B, dim=0)).max().item()


def bench_block_size(A, B, block_size: int, preconditioner: str,
                     use_single_reduction: bool, tol: float) -> BenchmarkResult:
    """Run one block size."""
    kernel = bcg.select_kernel(block_size, use_single_reduction)
    dof, nrhs = B.shape
    try:
        reset_cuda()
        M = bcg.get_preconditioner(A, preconditioner)
        problem = bcg.LinearProblem(A, None, B, M=M)
        problem.set_problem()
        solver = bcg.BlockCGSolver(problem, block_size=block_size,
                                   use_single_reduction=use_single_reduction,
                                   convergence_tolerance=tol, maximum_iterations=20000)
        if B.is_cuda:
            torch.cuda.synchronize()
        t0 = time.perf_counter()
        result = solver.solve()
        if B.is_cuda:
            torch.cuda.synchronize()
        elapsed = (time.perf_counter() - t0) * 1000

        return BenchmarkResult(
            block_size=block_size, kernel=kernel, preconditioner=preconditioner,
            dof=dof, nrhs=nrhs, time_ms=elapsed,
            num_iters=solver.get_num_iters(),
            residual=compute_residual(A, problem.get_lhs(), B),
            success=result == bcg.ReturnType.CONVERGED,
        )
    except bcg.BlockCGError as e:
        return BenchmarkResult(
            block_size=block_size, kernel=kernel, preconditioner=preconditioner,
            dof=dof, nrhs=nrhs, time_ms=-1, num_iters=-1, residual=-1,
            success=False, error_msg=str(e)[:80]
        )


def run_benchmark(grid: int, nrhs: int, block_sizes: List[int], preconditioner: str,
                  device: str, dtype=torch.float64) -> List[Dict]:
    val, row, col, shape = poisson_2d(grid, dtype=dtype, device=device)
    A = bcg.CachedSparseMatrix(val, row, col, shape)
    g = torch.Generator(device=device).manual_seed(0)
    B = torch.rand(shape[0], nrhs, dtype=dtype, device=device, generator=g)
    tol = 1e-10 if dtype == torch.float64 else 1e-5

    print(f"\nDOF={shape[0]:,}  nrhs={nrhs}  preconditioner={preconditioner}  device={device}")
    print(f"{'block':>6} {'kernel':>18} {'iters':>7} {'time (ms)':>11} {'residual':>10}")
    print("-" * 58)

    results = []
    configs = [(bs, False) for bs in block_sizes] + [(1, True)]
    for block_size, single_reduction in configs:
        r = bench_block_size(A, B, block_size, preconditioner, single_reduction, tol)
        results.append(asdict(r))
        if r.success:
            print(f"{r.block_size:>6} {r.kernel:>18} {r.num_iters:>7} {r.time_ms:>11.1f} {r.residual:>10.2e}")
        else:
            print(f"{r.block_size:>6} {r.kernel:>18}  FAILED {r.error_msg or 'unconverged'}")
    return results


# ============================================================================
# Plotting
# ============================================================================

def generate_plots(results: List[Dict], output_dir: Path, no_title: bool = False):
    """Time and iterations against block size."""
    try:
        import matplotlib
        matplotlib.use('Agg')
        import matplotlib.pyplot as plt
    except ImportError:
        print("matplotlib not available, skipping plots")
        return

    block = [r for r in results if r['success'] and r['kernel'] != 'single_reduction']
    if not block:
        return
    sizes = [r['block_size'] for r in block]

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(11, 4))
    ax1.plot(sizes, [r['time_ms'] for r in block], 'o-', color='#3498db')
    ax1.set_xlabel('Block size')
    ax1.set_ylabel('Time (ms)')
    ax1.set_xscale('log', base=2)
    ax1.grid(True, alpha=0.3)

    ax2.plot(sizes, [r['num_iters'] for r in block], 's-', color='#e74c3c')
    ax2.set_xlabel('Block size')
    ax2.set_ylabel('Iterations (last group)')
    ax2.set_xscale('log', base=2)
    ax2.grid(True, alpha=0.3)

    if not no_title:
        r0 = block[0]
        fig.suptitle(f"Block CG, DOF={r0['dof']:,}, {r0['nrhs']} right-hand sides")
    fig.tight_layout()
    path = output_dir / 'block_size.png'
    fig.savefig(path, dpi=150)
    plt.close(fig)
    print(f"Plot saved to: {path}")


def main():
    parser = argparse.ArgumentParser(description='Benchmark block CG block sizes')
    parser.add_argument('--only-plot', action='store_true',
                        help='Only regenerate plots from cached data')
    parser.add_argument('--no-title', action='store_true',
                        help='Generate plots without titles')
    parser.add_argument('--grid', type=int, default=64, help='Poisson grid size (DOF = grid^2)')
    parser.add_argument('--nrhs', type=int, default=16, help='Number of right-hand sides')
    parser.add_argument('--preconditioner', default='jacobi',
                        choices=['jacobi', 'block_jacobi', 'polynomial', 'none'])
    parser.add_argument('--device', default='cuda' if torch.cuda.is_available() else 'cpu')
    args = parser.parse_args()

    print("=" * 60)
    print("torch-bcg Block Size Benchmark")
    print("=" * 60)
    print(f"PyTorch: {torch.__version__}")
    print(f"CUDA available: {torch.cuda.is_available()}")

    cache_file = OUTPUT_DIR / f'benchmark_grid{args.grid}_nrhs{args.nrhs}.json'
    if args.only_plot:
        if not cache_file.exists():
            print(f"Cache file not found: {cache_file}")
            return
        with open(cache_file, 'r') as f:
            results = json.load(f)
        print(f"Loaded {len(results)} results from {cache_file}")
    else:
        block_sizes = [bs for bs in (1, 2, 4, 8, 16, 32) if bs <= args.nrhs]
        results = run_benchmark(args.grid, args.nrhs, block_sizes, args.preconditioner, args.device)
        with open(cache_file, 'w') as f:
            json.dump(results, f, indent=2)
        print(f"Results saved to: {cache_file}")

    generate_plots(results, OUTPUT_DIR, args.no_title)


if __name__ == '__main__':
    main()
