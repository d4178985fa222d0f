"""
Fusion job descriptions.

A single job is an argument list

    img1 weight1 ... imgN weightN marker_img threshold output_img

and a time-lapse job is a job file listing one filename pattern per line
(optionally followed by a weight), the marker filename pattern on the last
line. Patterns contain XXX or XXXX, which are replaced by the zero-padded
timepoint index.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from silvergt.dataio.imageio import read_image

USAGE = "Usage: img1 weight1 ... imgN weightN marker_img threshold output_img"

MERGE_MODELS = ("threshold-flat", "threshold-user", "majority-flat")


@dataclass
class FusionJob:
    """One fully instantiated fusion job."""

    candidate_paths: List[Path]
    weights: List[float]
    marker_path: Path
    threshold: float
    output_path: Path


@dataclass
class FusionJobPattern:
    """A job with XXX/XXXX filename patterns, expanded per timepoint."""

    candidate_patterns: List[str]
    weights: List[float]
    marker_pattern: str
    threshold: float

    def expand(self, idx: int, output_pattern: str) -> FusionJob:
        """Instantiate the job for timepoint `idx`."""
        return FusionJob(
            candidate_paths=[
                Path(expand_filename_pattern(p, idx)) for p in self.candidate_patterns
            ],
            weights=list(self.weights),
            marker_path=Path(expand_filename_pattern(self.marker_pattern, idx)),
            threshold=self.threshold,
            output_path=Path(expand_filename_pattern(output_pattern, idx)),
        )


def _parse_float(token: str, what: str) -> float:
    try:
        return float(token)
    except ValueError:
        raise ValueError(f"{what} {token!r} cannot be parsed as a real number.") from None


def parse_job_arguments(args: Sequence[str]) -> FusionJob:
    """
    Parse `img1 w1 ... imgN wN marker threshold output`.

    Raises
    ------
    ValueError
        If the list is too short, of even length, or a number is malformed.
    """
    args = list(args)
    if len(args) < 5 or len(args) % 2 == 0:
        raise ValueError(
            f"{USAGE}\nAt least one input image, exactly one marker image and "
            "one threshold plus one output image are expected."
        )

    n_inputs = (len(args) - 3) // 2
    candidate_paths = [Path(args[2 * i]) for i in range(n_inputs)]
    weights = [_parse_float(args[2 * i + 1], "Weight") for i in range(n_inputs)]

    return FusionJob(
        candidate_paths=candidate_paths,
        weights=weights,
        marker_path=Path(args[-3]),
        threshold=_parse_float(args[-2], "Threshold"),
        output_path=Path(args[-1]),
    )


def load_job(job: FusionJob) -> Tuple[List[NDArray], List[float], NDArray]:
    """
    Read the images of a job and check they fit together.

    Returns
    -------
    candidates : list of NDArray
        Candidate images.
    weights : list of float
        Weight per candidate.
    marker : NDArray
        Marker image.
    """
    candidates = []
    for path, weight in zip(job.candidate_paths, job.weights):
        print(f"Reading pair: {path} {weight}")
        img = read_image(path)
        if not np.issubdtype(img.dtype, np.number):
            raise ValueError(f"Input image voxels must be scalars: {path}")
        if candidates and img.dtype != candidates[0].dtype:
            raise ValueError(
                f"Voxel types of all input images must be the same: {path} is "
                f"{img.dtype}, first image is {candidates[0].dtype}."
            )
        if candidates and img.shape != candidates[0].shape:
            raise ValueError(
                f"{path} has shape {img.shape}, first image has {candidates[0].shape}."
            )
        candidates.append(img)

    print(f"Reading marker image: {job.marker_path}")
    marker = read_image(job.marker_path)
    if not np.issubdtype(marker.dtype, np.integer):
        raise ValueError(
            "Markers must be stored in an integer-type image, e.g., 8bits or 16bits gray image."
        )
    if candidates and marker.shape != candidates[0].shape:
        raise ValueError(
            f"Marker image has shape {marker.shape}, input images have {candidates[0].shape}."
        )

    return candidates, list(job.weights), marker


def _check_pattern(pattern: str, where: str) -> None:
    first = pattern.find("XXX")
    if first == -1 or pattern.rfind("XXX") - first > 1:
        raise ValueError(f"Filename {pattern!r} does not contain XXX or XXXX pattern{where}.")


def expand_filename_pattern(pattern: Union[str, Path], idx: int) -> str:
    """
    Replace the XXX or XXXX in `pattern` with `idx`, zero-padded to 3 or 4 digits.

    >>> expand_filename_pattern("mask_XXX.tif", 7)
    'mask_007.tif'
    """
    pattern = str(pattern)
    _check_pattern(pattern, "")
    start = pattern.find("XXX")
    width = 4 if pattern.rfind("XXX") > start else 3
    return f"{pattern[:start]}{idx:0{width}d}{pattern[start + width:]}"


def parse_number_sequence(text: str) -> List[int]:
    """
    Expand a sequence such as "1-9,23,25" into a sorted list of unique ints.

    Raises
    ------
    ValueError
        If a term cannot be parsed.
    """
    numbers = set()
    parsed = 0
    for term in text.split(","):
        try:
            if "-" in term:
                low, high = term.split("-", 1)
                numbers.update(range(int(low), int(high) + 1))
            else:
                numbers.add(int(term))
        except ValueError as e:
            raise ValueError(
                f"Parsing problem after reading {text[:parsed]!r}: {e}"
            ) from None
        parsed += len(term) + 1
    return sorted(numbers)


def read_job_file(
    path: Union[str, Path],
    merge_model: str = "threshold-flat",
    threshold: float = 1.0,
) -> FusionJobPattern:
    """
    Read a time-lapse job file.

    Parameters
    ----------
    path : str or Path
        Job file, one filename pattern per line, marker pattern last. With
        the "threshold-user" model every line but the last ends with a
        weight column.
    merge_model : str
        "threshold-flat" (weights 1.0, given threshold), "threshold-user"
        (weights from the file, given threshold) or "majority-flat"
        (weights 1.0, threshold is a strict majority of the inputs).
    threshold : float
        Voting threshold of the threshold models.

    Returns
    -------
    FusionJobPattern
    """
    if merge_model not in MERGE_MODELS:
        raise ValueError(f"Unsupported merging model {merge_model!r}, expected one of {MERGE_MODELS}.")

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Job file {path} does not exist.")

    lines = [line.strip() for line in path.read_text().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("Job file must list at least one input and the marker pattern.")

    weight_avail = merge_model == "threshold-user"
    patterns: List[str] = []
    weights: List[float] = []
    for line_no, line in enumerate(lines[:-1], start=1):
        if weight_avail:
            tokens = line.split()
            if len(tokens) == 1:
                raise ValueError(f"Missing column with weights on line {line_no}.")
            pattern = " ".join(tokens[:-1])
            weights.append(_parse_float(tokens[-1], f"The weight column on line {line_no}:"))
        else:
            pattern = line
            weights.append(1.0)
        _check_pattern(pattern, f" on line {line_no}")
        patterns.append(pattern)

    marker_pattern = lines[-1]
    _check_pattern(marker_pattern, f" on line {len(lines)}")

    if merge_model == "majority-flat":
        threshold = len(patterns) // 2 + 1.0

    return FusionJobPattern(
        candidate_patterns=patterns,
        weights=weights,
        marker_pattern=marker_pattern,
        threshold=float(threshold),
    )
