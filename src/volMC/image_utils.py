from typing import Union
import numpy as np
import numba as nb
import matplotlib.pyplot as plt

from volMC.Volume import Volume


@nb.njit(cache=True)
def hist(values: np.ndarray[np.integer], nb_levels: int = 256) -> np.ndarray[np.uint64]:
    """
    Compute the gray-level histogram of non-negative integer values.

    Parameters
    ----------
    values : np.ndarray[np.integer]
        Gray levels. Values outside of [0, `nb_levels` - 1] are ignored.
    nb_levels : int, optional
        Number of histogram bins. Default is `256`.

    Returns
    -------
    histogram : np.ndarray[np.uint64]
        Histogram array where `histogram[g]` is the number of values equal
        to `g`.
    """
    histogram = np.zeros(nb_levels, dtype="uint64")
    for v in values.flat:
        if 0 <= v < nb_levels:
            histogram[v] += 1
    return histogram


def otsu_threshold(histogram: np.ndarray[np.integer]) -> tuple[float, float]:
    """
    Foreground and background gray levels of a histogram, split with Otsu's
    criterion.

    The inter-class variance of every split level is computed at once from the
    cumulative class weights and moments of the histogram, and the means of the
    two classes at the first maximizing level are returned.

    Parameters
    ----------
    histogram : np.ndarray[np.integer]
        Gray-level histogram as returned by `hist`, of any number of levels.

    Returns
    -------
    fg_value : float
        Mean gray level of the brighter class.
    bg_value : float
        Mean gray level of the darker class.

    Notes
    -----
    A histogram with a single populated level cannot be split: its mean is
    returned for both classes. An empty histogram gives `(0, 0)`.
    """
    counts = np.asarray(histogram, dtype="float")
    weight_b = np.cumsum(counts)
    moment_b = np.cumsum(counts * np.arange(counts.size))
    total, moment = weight_b[-1], moment_b[-1]
    if total == 0:
        return 0.0, 0.0
    weight_f = total - weight_b
    split = (weight_b > 0) & (weight_f > 0)
    if not split.any():
        return float(moment / total), float(moment / total)
    mean_b = moment_b / np.where(split, weight_b, 1)
    mean_f = (moment - moment_b) / np.where(split, weight_f, 1)
    variance = np.where(split, weight_b * weight_f * (mean_f - mean_b) ** 2, -1)
    level = np.argmax(variance)
    return float(mean_f[level]), float(mean_b[level])


def find_isovalue(
    volume: Volume,
    save_file: Union[str, None] = None,
    verbose: bool = False,
) -> int:
    """
    Choose an iso-value halfway between the background and foreground gray
    levels of a volume, estimated with Otsu's method.

    Parameters
    ----------
    volume : Volume
        Volume read in scalar mode (gray levels in [0, 255]).
    save_file : str or None, optional
        Filename used to save the histogram plot. If `None`, the plot is not
        saved. Default is `None`.
    verbose : bool, optional
        If `True`, prints the estimated levels and displays the histogram.
        Default is `False`.

    Returns
    -------
    int
        Iso-value `int(0.5 * (fg + bg))`.
    """
    w, h, d = volume.shape
    field = volume.intensity_field()[1 : (d + 1), 1 : (h + 1), 1 : (w + 1)]
    histogram = hist(field.astype("int64"))
    fg, bg = otsu_threshold(histogram)
    isovalue = int(0.5 * (fg + bg))

    if verbose or save_file is not None:
        fig, ax = plt.subplots()
        x = np.arange(histogram.size)
        ax.fill_between(x, histogram, color="#E6AB02", alpha=0.25)
        ax.axvline(isovalue, color="#D95F02", label=f"iso-value {isovalue}")
        ax.set_xlabel("graylevel")
        ax.set_ylabel("frequency")
        ax.set_yscale("log")
        ax.set_title("Histogram of the volume")
        ax.legend()
        if save_file is not None:
            if verbose:
                print(f"Saving histogram to '{save_file}'")
            fig.savefig(save_file)
        if verbose:
            print(f"Background {bg:.1f}, foreground {fg:.1f}, iso-value {isovalue}")
            plt.show()
        plt.close(fig)
    return isovalue
