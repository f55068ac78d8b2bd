"""
atsne_cli - Command-line runner for atsne.

Loads one embedding from a local directory or a projector server,
merges its metadata, runs t-SNE to a fixed iteration count on a frame
scheduler and writes the resulting coordinates next to the metadata.
"""

from __future__ import annotations

import argparse, logging
from pathlib import Path
from typing import Optional

import pandas as pd
import torch

from atsne_model import Config, MetadataShapeMismatch
from atsne import (
    Dataset,
    DataProvider,
    FrameScheduler,
    LocalDataProvider,
    ServerDataProvider,
)


# ── Wiring ────────────────────────────────────────────────────────


def make_provider(config: Config, logger: logging.Logger) -> DataProvider:
    if config.server_url:
        logger.info(f"Using projector server at {config.server_url}")
        return ServerDataProvider(
            config.server_url,
            timeout=config.request_timeout,
            chunk_size=config.chunk_size,
            max_unique=config.max_unique_values,
            max_sprite_px=config.max_sprite_px,
            seed=config.seed,
            logger=logger,
        )
    logger.info(f"Using local data in {config.data_dir}")
    return LocalDataProvider(
        config.data_dir,
        chunk_size=config.chunk_size,
        max_unique=config.max_unique_values,
        max_sprite_px=config.max_sprite_px,
        seed=config.seed,
        logger=logger,
    )


def load_dataset(
    provider: DataProvider, config: Config, logger: logging.Logger
) -> Dataset:
    run = config.run
    if not run:
        runs = provider.list_runs()
        if not runs:
            raise FileNotFoundError("No runs with a projector config found")
        run = runs[0]
    projector = provider.get_config(run)
    name = config.tensor_name or projector.embeddings[0].tensor_name
    logger.info(f"Loading run={run!r} tensor={name!r}")

    dataset = provider.get_tensor(run, name)
    metadata = provider.get_sprite_and_metadata(run, name)
    if metadata.points_info is not None:
        try:
            dataset.merge_metadata(metadata)
        except MetadataShapeMismatch as e:
            logger.error(f"[Metadata] not merged ({e.kind}): {e}")
    return dataset


def run_tsne(
    dataset: Dataset, config: Config, logger: logging.Logger, iterations: int
) -> int:
    """Run t-SNE for the given number of iterations; return the last one."""
    dataset.sample_size = config.sample_size
    dataset.knn_device = config.device
    dataset.knn_use_gpu = config.knn_use_gpu
    dataset.knn_block_size = config.knn_block_size
    dataset.engine_device = config.device if torch.cuda.is_available() else "cpu"
    if config.supervise_column:
        dataset.set_supervision(config.supervise_column, config.supervise_input)
        dataset.set_supervise_factor(config.supervise_factor)

    last = 0

    def on_step(iteration: Optional[int]):
        nonlocal last
        if iteration is None:
            logger.info(f"[TSNE] stopped after {last:,} iterations")
            return
        last = iteration
        if iteration % config.log_interval == 0:
            logger.info(f"[TSNE] iteration {iteration:,}/{iterations:,}")
        if iteration >= iterations:
            dataset.stop_tsne()

    scheduler = FrameScheduler()
    dataset.normalize()
    dataset.project_tsne(
        config.perplexity, config.learning_rate, config.tsne_dim, on_step, scheduler
    )
    scheduler.run()
    return last


def export_projections(dataset: Dataset, config: Config, name: str) -> Path:
    out_dir = Path(config.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    frame: pd.DataFrame = dataset.projections_frame()
    if config.export_format == "parquet":
        path = out_dir / f"{name}.parquet"
        frame.to_parquet(path, index=False)
    else:
        path = out_dir / f"{name}.tsv"
        frame.to_csv(path, sep="\t", index=False)
    return path


# ── Entry Point ────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="atsne")
    parser.add_argument("--config", default="atsne_config.yaml")
    parser.add_argument("--run", default=None)
    parser.add_argument("--tensor", default=None)
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    # ── Logging ──
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    for name in ("urllib3", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logger = logging.getLogger("atsne")

    # ── Config ──
    config = Config.load(args.config)
    if args.run is not None:
        config.run = args.run
    if args.tensor is not None:
        config.tensor_name = args.tensor
    iterations = args.iterations or config.max_iterations

    provider = make_provider(config, logger)
    dataset = load_dataset(provider, config, logger)
    logger.info(
        f"Dataset: {dataset.dim[0]:,} points x {dataset.dim[1]} dims, "
        f"{len(dataset.sequences)} sequences"
    )

    run_tsne(dataset, config, logger, iterations)
    path = export_projections(dataset, config, config.tensor_name or "projection")
    logger.info(f"Wrote {path}")


if __name__ == "__main__":
    main()
