from pathlib import Path
import argparse
import logging
import pandas as pd
from datetime import datetime
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns

from greensched.config import LOGGING_LEVEL, LOGGING_FORMAT, LOGGING_DATEFMT
from greensched.models.strategies import STRATEGIES
from greensched.scheduler.policy_engine import PolicyEngine, SchedulerConfig
from greensched.sim_cluster import SimulatedCluster
from greensched.simulation import Simulation
from greensched.utils.workload import generate_machines, generate_workload, workload_to_frame

logging.basicConfig(
    level=LOGGING_LEVEL,
    format=LOGGING_FORMAT,
    datefmt=LOGGING_DATEFMT
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Compare placement and power strategies in simulation")
    parser.add_argument("--tasks", type=int, default=500, help="Number of tasks to generate")
    parser.add_argument("--machines-per-type", type=int, default=8, help="Machines per CPU type")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for workload and fleet")
    parser.add_argument("--strategies", nargs="+", default=sorted(STRATEGIES), choices=sorted(STRATEGIES))
    parser.add_argument("--output", type=Path, default=Path("results"), help="Results directory")
    return parser.parse_args()


def create_output_directory(root: Path) -> Path:
    """Create output directory for results"""
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    output_dir = root / f'sim_{timestamp}'
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def plot_metrics(metrics_df: pd.DataFrame, output_dir: Path, strategy: str):
    """Create visualizations of one strategy's run"""
    if metrics_df.empty:
        return

    # 1. Machines and tasks over time
    plt.figure(figsize=(12, 6))
    plt.plot(metrics_df['timestamp'], metrics_df['running_machines'], label='Running Machines')
    plt.plot(metrics_df['timestamp'], metrics_df['running_tasks'], label='Running Tasks')
    plt.plot(metrics_df['timestamp'], metrics_df['deferred_tasks'], label='Deferred Tasks')
    plt.xlabel('Time (s)')
    plt.ylabel('Count')
    plt.title(f'Cluster Activity Over Time - {strategy}')
    plt.legend()
    plt.tight_layout()
    plt.savefig(output_dir / f'cluster_activity_{strategy}.png')
    plt.close()

    # 2. Energy
    plt.figure(figsize=(12, 6))
    plt.plot(metrics_df['timestamp'], metrics_df['cluster_energy'], label='Cumulative Energy')
    plt.xlabel('Time (s)')
    plt.ylabel('Energy (kWh)')
    plt.title(f'Energy Over Time - {strategy}')
    plt.legend()
    plt.tight_layout()
    plt.savefig(output_dir / f'energy_{strategy}.png')
    plt.close()


def plot_strategy_comparison(reports: pd.DataFrame, output_dir: Path):
    """Create comparison plots for all strategies"""
    metrics_to_plot = [
        ('total_energy_kwh', 'Energy (kWh)'),
        ('avg_waiting_time', 'Waiting Time (s)'),
        ('sla0_violation_pct', 'SLA0 Violations (%)'),
        ('max_deferred_tasks', 'Deferred Tasks'),
    ]

    for metric, ylabel in metrics_to_plot:
        if metric not in reports.columns:
            continue
        plt.figure(figsize=(10, 6))
        sns.barplot(data=reports, x='strategy', y=metric)
        plt.title(f'{ylabel} by Strategy')
        plt.ylabel(ylabel)
        plt.xticks(rotation=45)
        plt.tight_layout()
        plt.savefig(output_dir / f'comparison_{metric}.png')
        plt.close()


def main():
    args = parse_args()
    output_dir = create_output_directory(args.output)

    try:
        logger.info("Generating workload...")
        specs = generate_machines(args.machines_per_type, seed=args.seed)
        workload = generate_workload(args.tasks, seed=args.seed)
        workload_to_frame(workload).to_csv(output_dir / 'workload.csv', index=False)

        reports = []
        for strategy in args.strategies:
            logger.info(f"Running {strategy} strategy...")
            cluster = SimulatedCluster(specs)
            engine = PolicyEngine(cluster, SchedulerConfig(strategy=strategy))
            simulation = Simulation(cluster, engine, workload)
            summary, metrics = simulation.run()
            if summary is None:
                logger.error(f"{strategy} run produced no shutdown summary")
                continue

            metrics.save_metrics(str(output_dir), prefix=f'{strategy}_')
            engine.get_placement_history().to_csv(output_dir / f'{strategy}_placements.csv', index=False)
            engine.power_manager.get_power_history().to_csv(output_dir / f'{strategy}_power.csv', index=False)
            plot_metrics(metrics.get_metrics_history(), output_dir, strategy)

            report = metrics.get_full_report(summary.sla_violations, summary.cluster_energy)
            report['strategy'] = strategy
            report['unplaced_tasks'] = len(summary.unplaced_tasks)
            report['forced_violations'] = len(summary.forced_violations)
            reports.append(report)

        reports_df = pd.DataFrame(reports)
        reports_df.to_csv(output_dir / 'strategy_comparison.csv', index=False)

        logger.info("Creating comparison plots...")
        plot_strategy_comparison(reports_df, output_dir)

        logger.info(f"Simulation completed. Results saved to {output_dir}")

    except Exception as e:
        logger.error(f"Simulation failed: {str(e)}")
        raise


if __name__ == "__main__":
    main()
