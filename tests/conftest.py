"""
conftest.py - Shared test fixtures for spicy_s

Fixtures build small synthetic CellData objects. Each image holds two
cell types, 'A' and 'B'. With attraction > 0 a share of the B cells is
placed right next to A cells, which pushes the cross-L curve above its
expectation; with attraction = 0 both types are independent uniform
scatters.
"""

import numpy as np
import pandas as pd
import pytest
from spicy_s.data.cells import CellData

# ===========================================================================
# Helpers
# ===========================================================================

IMAGE_SIZE = 200.0


def simulate_image(rng, image_id, n_a=40, n_b=40, attraction=0.0, size=IMAGE_SIZE):
    """
    Cells of one image as a DataFrame (x, y, cellType, imageID).

    attraction : fraction of B cells placed within a few units of an A cell.
    """
    a = rng.uniform(0, size, (n_a, 2))
    n_near = int(round(attraction * n_b))
    near = a[rng.integers(0, n_a, n_near)] + rng.normal(0, 3.0, (n_near, 2))
    far = rng.uniform(0, size, (n_b - n_near, 2))
    b = np.clip(np.vstack([near, far]), 0, size)

    coords = np.vstack([a, b])
    return pd.DataFrame(
        {
            "x": coords[:, 0],
            "y": coords[:, 1],
            "cellType": ["A"] * n_a + ["B"] * n_b,
            "imageID": image_id,
        }
    )


def simulate_study(seed, subjects, conditions, attraction, count_range=(25, 80)):
    """
    CellData for a study, one image per entry of subjects/conditions.

    attraction : dict condition -> attraction of that condition's images.
    count_range : per-image numbers of A and B cells are drawn uniformly
        from [low, high), so images differ in how noisy their statistic is.
    """
    rng = np.random.default_rng(seed)
    frames = []
    pheno = []
    for k, (subject, condition) in enumerate(zip(subjects, conditions)):
        image_id = f"img{k:02d}"
        n_a, n_b = rng.integers(*count_range, size=2)
        frames.append(simulate_image(rng, image_id, int(n_a), int(n_b), attraction[condition]))
        pheno.append({"imageID": image_id, "subject": subject, "condition": condition, "age": 40 + k})
    return CellData(cells=pd.concat(frames, ignore_index=True), phenotype=pd.DataFrame(pheno))


# ===========================================================================
# Fixture 1: two images, no phenotype
# ===========================================================================


@pytest.fixture
def two_image_cells():
    """Two images with types A and B, no phenotype table."""
    rng = np.random.default_rng(0)
    df = pd.concat(
        [simulate_image(rng, "img1"), simulate_image(rng, "img2", attraction=0.5)],
        ignore_index=True,
    )
    return CellData(cells=df)


# ===========================================================================
# Fixture 2: 10 images, 2 subjects x 5 images, condition varies within subject
# ===========================================================================


@pytest.fixture
def condition_cells():
    """
    10 images from 2 subjects (5 each). Conditions alternate
    control / treated within each subject; treated images have B
    cells attracted to A cells.
    """
    subjects = ["s1"] * 5 + ["s2"] * 5
    conditions = ["control", "treated"] * 5
    return simulate_study(1, subjects, conditions, {"control": 0.0, "treated": 0.6})


# ===========================================================================
# Fixture 3: 16 images, 8 subjects, condition between subjects
# ===========================================================================


@pytest.fixture
def powered_cells():
    """
    16 images from 8 subjects (2 each). Subjects s0-s3 are control,
    s4-s7 treated, with a strong attraction effect.
    """
    subjects = [f"s{i // 2}" for i in range(16)]
    conditions = ["control" if i < 8 else "treated" for i in range(16)]
    return simulate_study(2, subjects, conditions, {"control": 0.0, "treated": 0.7})
