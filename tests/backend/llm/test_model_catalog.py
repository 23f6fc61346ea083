# tests/backend/llm/test_model_catalog.py
from __future__ import annotations

import pytest

import config as cfg
from backend.llm import model_catalog as mc
from backend.llm.model_catalog import ModelDescriptor
from backend.util.hw_detect import HardwareProfile

A = ModelDescriptor(id="a", name="A", filename="a.gguf", mem_req_mb=100, tier="wide")
B = ModelDescriptor(id="b", name="B", filename="b.gguf", mem_req_mb=300, tier="wide")
C = ModelDescriptor(id="c", name="C", filename="c.gguf", mem_req_mb=50, tier="narrow")
SMALL = [A, B, C]


def _profile(ram_gb=16.0, vram_gb=None):
    return HardwareProfile(
        os="linux",
        arch="x86_64",
        cpu_cores=8,
        ram_gb=ram_gb,
        available_ram_mb=ram_gb * 512,
        has_nvidia=vram_gb is not None,
        cuda_name="Fake" if vram_gb is not None else None,
        vram_gb=vram_gb,
        has_mps=False,
    )


def test_shipped_catalog_is_well_ordered():
    mc.validate_catalog_order(mc.CATALOG)
    assert mc.CATALOG[0].tier == "wide"
    assert len({m.id for m in mc.CATALOG}) == len(mc.CATALOG)


@pytest.mark.parametrize(
    "catalog",
    [
        [C, A],  # narrow before wide
        [B, A],  # wide not sorted by memory
        [A, mc.ModelDescriptor(id="d", name="D", filename="d", mem_req_mb=500, tier="narrow"), C],
    ],
)
def test_validate_catalog_order_rejects_bad_layouts(catalog):
    with pytest.raises(ValueError):
        mc.validate_catalog_order(catalog)


def test_available_models_filter_by_optional_feature():
    assert mc.get_available_models(True, catalog=SMALL) == [A, B, C]
    assert mc.get_available_models(False, catalog=SMALL) == [A, B]


def test_low_resource_limits_to_smallest_entries(monkeypatch):
    monkeypatch.setattr(cfg.settings, "low_resource_model_limit", 1)
    assert mc.get_available_models(True, low_resource=True, catalog=SMALL) == [A]
    assert mc.next_smaller_model("b", True, low_resource=True, catalog=SMALL) is None


def test_next_smaller_model_walks_back_within_available_list():
    assert mc.next_smaller_model("b", False, catalog=SMALL) == A
    assert mc.next_smaller_model("a", False, catalog=SMALL) is None
    # index arithmetic over the combined list crosses into the wide tier
    assert mc.next_smaller_model("c", True, catalog=SMALL) == B
    assert mc.next_smaller_model("c", False, catalog=SMALL) is None
    assert mc.next_smaller_model("unknown", True, catalog=SMALL) is None


def test_smallest_model_is_first_available():
    assert mc.smallest_model(True, catalog=SMALL) == A
    assert mc.smallest_model(False, catalog=[C]) is None


def test_get_model_by_id():
    assert mc.get_model_by_id("c", SMALL) == C
    assert mc.get_model_by_id("zzz", SMALL) is None
    assert mc.get_model_by_id("llama-3.2-1b-instruct-q4").tier == "wide"


def test_recommend_model_uses_sixty_percent_of_vram():
    # 1 GB VRAM -> 614 MB budget: B (300) fits, so it is the largest that fits
    rec = mc.recommend_model(False, profile=_profile(vram_gb=1.0), catalog=SMALL)
    assert rec == B

    tiny = mc.recommend_model(False, profile=_profile(ram_gb=0.1), catalog=SMALL)
    assert tiny == A  # nothing fits -> smallest


def test_recommend_model_on_shipped_catalog_uses_system_ram_without_vram():
    rec = mc.recommend_model(False, profile=_profile(ram_gb=4.0))
    # 4 GB * 0.6 = 2457 MB
    assert rec.id == "qwen2.5-1.5b-instruct-q4"
