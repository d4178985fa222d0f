"""
Fuse segmentations into silver ground truth

This file runs marker-guided weighted-voting fusion, either for a single
job given on the command line or for a whole time-lapse described by a job
file.
"""

import warnings
warnings.filterwarnings("ignore", category=UserWarning)
warnings.simplefilter("ignore", category=FutureWarning)

import timeit
from pathlib import Path
from typing import List, Optional

import typer
from tqdm import tqdm

from silvergt.dataio.imageio import write_image
from silvergt.dataio.jobspec import (
    FusionJob,
    load_job,
    parse_job_arguments,
    parse_number_sequence,
    read_job_file,
)
from silvergt.dataio.writerpool import ParallelImageWriter
from silvergt.imageprocessing.labelfuse import SimpleParams
from silvergt.imageprocessing.weightedvoting import WeightedVotingFusion, make_fusion

app = typer.Typer()
app.pretty_exceptions_enable = False


def _build_fusion(
    model: str,
    collision_threshold: float,
    remove_border: bool,
    insert_markers: bool,
    min_overlap: float,
    simple_params: Optional[SimpleParams],
    debug: bool,
) -> WeightedVotingFusion:
    try:
        return make_fusion(
            model,
            simple_params=simple_params,
            min_fraction_of_marker=min_overlap,
            collision_threshold=collision_threshold,
            remove_markers_at_border=remove_border,
            insert_markers_for_unfused=insert_markers,
            debug=debug,
            show_progress=True,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e))


def run_job(job: FusionJob, fusion: WeightedVotingFusion):
    """Load the images of `job` and fuse them; returns the fused image."""
    candidates, weights, marker = load_job(job)
    print(f"calling weighted voting algorithm with threshold={job.threshold}")
    return fusion.fuse(candidates, marker, weights=weights, threshold=job.threshold)


@app.command()
def fuse_job(
    args: List[str] = typer.Argument(
        ..., help="img1 weight1 ... imgN weightN marker_img threshold output_img"
    ),
    model: str = "BIC",
    collision_threshold: float = 0.1,
    remove_border: bool = False,
    insert_markers: bool = False,
    min_overlap: float = 0.5,
    debug: bool = False,
):
    """Fuse one set of segmentations.

    Usage: `silvergt-fuse fuse-job seg1.tif 1.0 seg2.tif 0.5 markers.tif 1.0 out.tif`

    Parameters
    ----------
    args: List[str]
        Candidate image and weight pairs, marker image, threshold, output.
    model: str
        "BIC" or "SIMPLE".
    collision_threshold: float
        Markers with a larger colliding ratio are removed.
    remove_border: bool
        Remove markers touching the image border.
    insert_markers: bool
        Fill colliding and unmatched markers from the marker image.
    min_overlap: float
        Fraction of a marker a candidate label must exceed to match.
    debug: bool
        Print per-marker details.
    """
    try:
        job = parse_job_arguments(args)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    fusion = _build_fusion(
        model, collision_threshold, remove_border, insert_markers, min_overlap, None, debug
    )
    try:
        output = run_job(job, fusion)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    print(f"Saving file: {job.output_path}")
    write_image(job.output_path, output)


@app.command()
def fuse_series(
    job_file: Path,
    output_pattern: Path,
    timepoints: str = "0-9",
    merge_model: str = "threshold-flat",
    threshold: float = 1.0,
    model: str = "BIC",
    collision_threshold: float = 0.1,
    remove_border: bool = False,
    insert_markers: bool = False,
    min_overlap: float = 0.5,
    max_iters: int = 4,
    no_update_iters: int = 2,
    initial_quality_threshold: float = 0.7,
    step_down_quality_threshold: float = 0.1,
    minimal_quality_threshold: float = 0.3,
    writers: int = 2,
    max_queue: int = 4,
    debug: bool = False,
):
    """Fuse a time-lapse described by a job file.

    The job file lists one input filename pattern per line (with a weight
    column for the "threshold-user" merge model) and ends with the marker
    filename pattern. Patterns contain XXX or XXXX, replaced by the timepoint.

    Parameters
    ----------
    job_file: Path
        Job specification file.
    output_pattern: Path
        Output filename pattern with XXX or XXXX.
    timepoints: str
        Timepoints to process, e.g. "1-9,23,25".
    merge_model: str
        "threshold-flat", "threshold-user" or "majority-flat".
    threshold: float
        Voting threshold of the threshold merge models.
    model: str
        "BIC" or "SIMPLE".
    writers: int
        Number of background image writers.
    max_queue: int
        Maximal number of outputs waiting to be written.
    """
    try:
        pattern = read_job_file(job_file, merge_model=merge_model, threshold=threshold)
        indices = parse_number_sequence(timepoints)
        # validates the output pattern up front
        pattern.expand(0, str(output_pattern))
        simple_params = SimpleParams(
            max_iters=max_iters,
            no_update_iters=no_update_iters,
            initial_quality_threshold=initial_quality_threshold,
            step_down_quality_threshold=step_down_quality_threshold,
            minimal_quality_threshold=minimal_quality_threshold,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e))

    if not output_pattern.parent.exists():
        raise typer.BadParameter(f"Parent folder {output_pattern.parent} does not exist.")

    fusion = _build_fusion(
        model, collision_threshold, remove_border, insert_markers, min_overlap,
        simple_params, debug,
    )

    total_start = timeit.default_timer()
    with ParallelImageWriter(n_workers=writers) as saver:
        for idx in tqdm(indices, desc="t", leave=True):
            job = pattern.expand(idx, str(output_pattern))
            start = timeit.default_timer()
            try:
                output = run_job(job, fusion)
            except ValueError as e:
                # outputs of the previous timepoints are still saved
                saver.close_all_workers_finish_unsaved_first()
                raise typer.BadParameter(f"Timepoint {idx}: {e}")
            saver.add_save_request_or_block_until_less_than(max_queue, output, job.output_path)
            print(f"ELAPSED TIME: {timeit.default_timer() - start:.1f} seconds")
    print(f"TOTAL ELAPSED TIME: {timeit.default_timer() - total_start:.1f} seconds")


# entry for point for CLI
def main():
    app()

if __name__ == "__main__":
    main()
