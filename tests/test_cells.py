"""
test_cells.py - Tests for CellData construction and accessors
"""

import numpy as np
import pandas as pd
import pytest

from spicy_s.data.cells import CellData
from spicy_s.data.config import ColumnNotFoundError, SpicyConfig, ValidationError


@pytest.fixture
def cell_table():
    return pd.DataFrame(
        {
            "x": [1.0, 2.0, 3.0, 4.0, 5.0],
            "y": [5.0, 4.0, 3.0, 2.0, 1.0],
            "cellType": ["T", "B", "T", "T", "M"],
            "imageID": [2, 2, 1, 1, 1],
        }
    )


class TestConstruction:

    def test_ids_cast_to_str(self, cell_table):
        cd = CellData(cells=cell_table)
        assert cd.image_ids() == ["2", "1"]
        assert cd.cell_types() == ["T", "B", "M"]
        assert cd.n_cells == 5 and cd.n_images == 2

    def test_missing_column(self, cell_table):
        with pytest.raises(ColumnNotFoundError, match="cellType"):
            CellData(cells=cell_table.drop(columns="cellType"))

    def test_custom_columns(self, cell_table):
        config = SpicyConfig(cell_type_col="phenotype", image_col="sample")
        df = cell_table.rename(columns={"cellType": "phenotype", "imageID": "sample"})
        cd = CellData(cells=df, config=config)
        assert cd.cell_types() == ["T", "B", "M"]

    def test_phenotype_aligned_to_images(self, cell_table):
        pheno = pd.DataFrame({"imageID": ["1", "2"], "condition": ["a", "b"]})
        cd = CellData(cells=cell_table, phenotype=pheno)
        assert list(cd.phenotype.index) == ["2", "1"]
        assert list(cd.get_phenotype("condition")["condition"]) == ["b", "a"]

    def test_phenotype_missing_image(self, cell_table):
        pheno = pd.DataFrame({"imageID": ["1"], "condition": ["a"]})
        with pytest.raises(ValidationError, match="no phenotype row"):
            CellData(cells=cell_table, phenotype=pheno)

    def test_phenotype_duplicate_image(self, cell_table):
        pheno = pd.DataFrame({"imageID": ["1", "1", "2"], "condition": ["a", "b", "a"]})
        with pytest.raises(ValidationError, match="duplicated"):
            CellData(cells=cell_table, phenotype=pheno)

    def test_extra_phenotype_rows_dropped(self, cell_table):
        pheno = pd.DataFrame({"imageID": ["1", "2", "3"], "condition": ["a", "b", "c"]})
        cd = CellData(cells=cell_table, phenotype=pheno)
        assert len(cd.phenotype) == 2

    def test_from_dataframe(self, condition_cells):
        df = condition_cells.cells.merge(condition_cells.get_phenotype(), left_on="imageID", right_index=True)
        rebuilt = CellData.from_dataframe(df, phenotype_cols=["subject", "condition", "age"])
        assert rebuilt.n_images == condition_cells.n_images
        pd.testing.assert_frame_equal(rebuilt.get_phenotype(), condition_cells.get_phenotype())

    def test_from_dataframe_varying_phenotype(self, cell_table):
        df = cell_table.assign(condition=["a", "b", "a", "a", "a"])
        with pytest.raises(ValidationError, match="vary within an image"):
            CellData.from_dataframe(df, phenotype_cols=["condition"])


class TestAccessors:

    def test_coords_and_types(self, cell_table):
        cd = CellData(cells=cell_table)
        np.testing.assert_array_equal(cd.get_spatial_coords("1"), [[3, 3], [4, 2], [5, 1]])
        assert list(cd.get_cell_types("2")) == ["T", "B"]

    def test_cell_counts(self, cell_table):
        counts = CellData(cells=cell_table).cell_counts()
        assert list(counts.index) == ["2", "1"]
        assert counts.loc["2", "M"] == 0
        assert counts.loc["1", "T"] == 2

    def test_split_by_image(self, cell_table):
        parts = CellData(cells=cell_table).split_by_image()
        assert list(parts) == ["2", "1"]
        assert len(parts["1"]) == 3

    def test_get_phenotype_errors(self, cell_table):
        cd = CellData(cells=cell_table)
        with pytest.raises(ValidationError, match="No phenotype"):
            cd.get_phenotype()
        cd = CellData(cells=cell_table, phenotype=pd.DataFrame({"imageID": ["1", "2"], "c": [0, 1]}))
        with pytest.raises(ColumnNotFoundError):
            cd.get_phenotype(["subject"])

    def test_subset_by_images(self, condition_cells):
        sub = condition_cells.subset_by_images(["img00", "img03"])
        assert sub.image_ids() == ["img00", "img03"]
        assert list(sub.phenotype.index) == ["img00", "img03"]
