"""Tests for the export pipeline and orchestrator."""

import asyncio
import json
import sys

import pytest

from assetsync.exceptions import ConfigurationError, ConversionError, ParseError
from assetsync.export import (
    ExportOptions,
    ExportOrchestrator,
    MasterMaterial,
    MasterMaterialsConfig,
    ModelExportPipeline,
    PackingMode,
    ToolRunner,
    build_material_json,
    determine_packing_mode,
    plan_export,
)
from assetsync.mapping import MappingDocument
from assetsync.models import MaterialResource, ModelResource, TextureResource

FOLDERS = {10: "props/chair", 20: "props/lamp"}


@pytest.fixture
def options(tmp_path):
    return ExportOptions(project_name="proj", output_root=tmp_path / "out")


@pytest.fixture
def chair(chair_assets, sources):
    model, materials, textures = chair_assets
    sources(model, "chair.fbx")
    for texture in textures:
        sources(texture, f"{texture.name}.png")
    return model, materials, textures


def _content(options, *parts):
    return options.content_dir.joinpath(*parts)


def _run(orchestrator, options, models=(), materials=(), textures=(), **kwargs):
    return asyncio.run(
        orchestrator.run(models, materials, textures, options, **kwargs)
    )


class TestModelExport:
    """Tests for exporting one model with its related resources."""

    def test_exact_produced_files(self, chair, options, export_tools):
        model, materials, textures = chair
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, materials, textures))

        assert result.success, result.error_message
        folder = _content(options, "props", "chair")
        assert set(result.produced_files) == {
            folder / "chair.glb",
            folder / "chair_lod1.glb",
            folder / "chair_lod2.glb",
            folder / "chair.json",
            folder / "materials" / "chair_mat.json",
            folder / "materials" / "fabric.json",
            folder / "textures" / "wood_diffuse.ktx2",
            folder / "textures" / "fabric_normal.ktx2",
            folder / "textures" / "fabric_ao.ktx2",
        }
        assert sorted(result.processed_material_ids) == [100, 101]
        assert sorted(result.processed_texture_ids) == [1000, 1001, 1002]

    def test_material_json_references_converted_textures(
        self, chair, options, export_tools
    ):
        model, materials, textures = chair
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)
        result = asyncio.run(pipeline.export_model(model, materials, textures))

        document = json.loads(result.material_jsons[100].read_text(encoding="utf-8"))
        assert document["master"] == "pbr_opaque"
        assert document["textures"] == {"diffuseMap": "../textures/wood_diffuse.ktx2"}

    def test_manifest(self, chair, options, export_tools):
        model, materials, textures = chair
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)
        result = asyncio.run(pipeline.export_model(model, materials, textures))

        manifest = json.loads(result.model_json_path.read_text(encoding="utf-8"))
        assert manifest["id"] == 1
        assert manifest["model"] == "chair.glb"
        assert manifest["lods"] == [
            {"level": 1, "file": "chair_lod1.glb"},
            {"level": 2, "file": "chair_lod2.glb"},
        ]
        assert manifest["materials"]["100"] == "materials/chair_mat.json"

    def test_glb_source_is_copied(self, options, export_tools, tool_runner, sources):
        model = sources(ModelResource(id=5, name="crate"), "crate.glb")
        options.generate_lods = False
        pipeline = ModelExportPipeline(options, export_tools)

        result = asyncio.run(pipeline.export_model(model, [], []))

        assert result.success
        assert result.converted_model_path == _content(options, "crate", "crate.glb")
        assert result.converted_model_path.read_bytes() == b"source of crate.glb"
        assert tool_runner.tool_calls("FBX2glTF") == 0

    def test_missing_texture_source_is_skipped(self, chair, options, export_tools):
        model, materials, textures = chair
        textures[0].path = None
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, materials, textures))

        assert result.success
        assert 1000 not in result.converted_textures
        document = json.loads(result.material_jsons[100].read_text(encoding="utf-8"))
        assert document["textures"] == {"diffuseMap": 1000}

    def test_model_without_source_fails(self, options, export_tools):
        pipeline = ModelExportPipeline(options, export_tools)
        result = asyncio.run(pipeline.export_model(ModelResource(id=9), [], []))
        assert not result.success
        assert "no source file" in result.error_message

    def test_converter_failure_is_reported(self, chair, options, export_tools, tool_runner):
        model, materials, textures = chair
        tool_runner.fail_on.add("chair.fbx")
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, materials, textures))

        assert not result.success
        assert "exited with code 1" in result.error_message


class TestPackedTextures:
    """Tests for ORM packing and packed material slots."""

    @pytest.fixture
    def metal(self, sources):
        model = sources(ModelResource(id=2, name="robot", parent_folder_id=10), "r.fbx")
        material = MaterialResource(
            id=200,
            name="robot_mat",
            parent_folder_id=10,
            normal_map_id=1,
            ao_map_id=2,
            gloss_map_id=3,
            metalness_map_id=4,
        )
        textures = [
            sources(TextureResource(id=i, name=f"robot_{slot}"), f"robot_{slot}.png")
            for i, slot in enumerate(("normal", "ao", "gloss", "metal"), start=1)
        ]
        return model, material, textures

    @pytest.mark.parametrize(
        "ao,gloss,metal,expected",
        [
            (True, True, True, PackingMode.OGM),
            (True, True, False, PackingMode.OG),
            (True, False, True, None),
            (False, True, True, None),
        ],
    )
    def test_packing_mode(self, ao, gloss, metal, expected):
        assert determine_packing_mode(ao, gloss, metal) == expected

    def test_packed_slots_replace_channel_maps(
        self, metal, options, export_tools, tool_runner
    ):
        model, material, textures = metal
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, [material], textures))

        packed = _content(options, "props", "chair", "textures", "robot_mat_ogm.ktx2")
        assert result.packed_textures == [packed]
        assert packed in result.produced_files
        document = json.loads(result.material_jsons[200].read_text(encoding="utf-8"))
        assert document["textures"] == {
            "ogmMap": "../textures/robot_mat_ogm.ktx2",
            "normalMap": "../textures/robot_normal.ktx2",
        }
        packer_args = next(args for name, args in tool_runner.calls if name == "orm-packer")
        assert "--toksvig" in packer_args
        assert packer_args[packer_args.index("--normal") + 1] == textures[0].path

    def test_unpacked_when_disabled(self, metal, options, export_tools):
        model, material, textures = metal
        options.use_packed_textures = False
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, [material], textures))

        document = json.loads(result.material_jsons[200].read_text(encoding="utf-8"))
        assert "ogmMap" not in document["textures"]
        assert document["textures"]["aoMap"] == "../textures/robot_ao.ktx2"

    def test_build_material_json_params(self):
        material = MaterialResource(
            id=1,
            diffuse=[1, 0.5],
            opacity=0.5,
            use_metalness=True,
            metalness=0.25,
            gloss_map_id=7,
        )
        document = build_material_json(material, "pbr_alpha", {7: "t.ktx2"})
        assert document["params"] == {
            "diffuse": [1.0, 0.5, 0.0],
            "metalness": 0.25,
            "opacity": 0.5,
            "useMetalness": True,
        }
        assert document["textures"] == {"glossMap": "t.ktx2"}


class TestMasterMaterials:
    """Tests for master material selection and shader chunks."""

    def test_config_parsing(self):
        config = MasterMaterialsConfig.from_dict(
            {
                "masters": [{"name": "glass", "blendType": "normal"}],
                "materialInstanceMappings": {"5": "glass"},
                "defaultMasterMaterial": "pbr_opaque",
            }
        )
        assert config.get_master("glass").blend_type == "normal"
        assert config.master_for(MaterialResource(id=5)) == "glass"
        assert config.master_for(MaterialResource(id=6)) == "pbr_opaque"

    def test_blend_type_fallback(self, options):
        assert options.master_for(MaterialResource(id=1, blend_type="additive")) == (
            "pbr_additive"
        )
        assert options.master_for(MaterialResource(id=1)) == "pbr_opaque"

    @pytest.mark.parametrize("data", [[], {"masters": [{"blendType": "x"}]}])
    def test_invalid_config(self, data):
        with pytest.raises(ParseError):
            MasterMaterialsConfig.from_dict(data)

    def test_chunks_copied_for_masters_in_use(self, chair, options, export_tools, tmp_path):
        model, materials, textures = chair
        masters_dir = tmp_path / "masters"
        (masters_dir / "chunks").mkdir(parents=True)
        (masters_dir / "chunks" / "diffuse.mjs").write_text("export default 1;")
        options.master_materials = MasterMaterialsConfig(
            masters=[
                MasterMaterial(
                    name="pbr_opaque",
                    chunks={
                        "diffusePS": "chunks/diffuse.mjs",
                        "missingPS": "chunks/missing.mjs",
                    },
                ),
                MasterMaterial(name="unused", chunks={"x": "chunks/diffuse.mjs"}),
            ]
        )
        options.master_materials_folder = masters_dir
        pipeline = ModelExportPipeline(options, export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_model(model, materials, textures))

        assert result.success
        assert result.chunk_files == [
            _content(options, "materials", "pbr_opaque", "chunks", "diffusePS.mjs")
        ]
        assert result.chunk_files[0].read_text() == "export default 1;"


class TestStandaloneExports:
    """Tests for materials and textures exported on their own."""

    def test_material_only_writes_json(self, options, export_tools, tool_runner):
        material = MaterialResource(
            id=300, name="lamp_mat", parent_folder_id=20, diffuse_map_id=2000
        )
        pipeline = ModelExportPipeline(options.materials_only(), export_tools, FOLDERS)

        result = asyncio.run(pipeline.export_material(material, []))

        assert result.success
        assert result.produced_files == [
            _content(options, "props", "lamp", "materials", "lamp_mat.json")
        ]
        document = json.loads(result.produced_files[0].read_text(encoding="utf-8"))
        assert document["textures"] == {"diffuseMap": 2000}
        assert tool_runner.calls == []

    def test_texture_export(self, options, export_tools, sources):
        texture = sources(TextureResource(id=3000, name="sky"), "sky.png")
        pipeline = ModelExportPipeline(options, export_tools)

        result = asyncio.run(pipeline.export_texture(texture))

        assert result.success
        assert result.produced_files == [_content(options, "textures", "sky.ktx2")]

    def test_texture_without_source_fails(self, options, export_tools):
        pipeline = ModelExportPipeline(options, export_tools)
        result = asyncio.run(pipeline.export_texture(TextureResource(id=1, name="gone")))
        assert not result.success
        assert "not found" in result.error_message


class TestPlanExport:
    """Tests for splitting a selection into disjoint item sets."""

    def test_covered_items_not_repeated(self, chair):
        model, materials, textures = chair
        lamp_mat = MaterialResource(id=300, name="lamp_mat", parent_folder_id=20)
        stray = TextureResource(id=3000, name="sky")

        plan = plan_export(
            [model],
            materials + [lamp_mat, lamp_mat],
            textures + [stray],
            materials + [lamp_mat],
            textures + [stray],
            FOLDERS,
        )

        assert plan.models == [model]
        assert plan.materials == [lamp_mat]
        assert plan.textures == [stray]
        assert plan.total_items == 3

    def test_texture_of_standalone_material_not_repeated(self):
        material = MaterialResource(id=1, name="m", diffuse_map_id=5)
        texture = TextureResource(id=5)
        plan = plan_export([], [material], [texture], [material], [texture], {})
        assert plan.materials == [material]
        assert plan.textures == []


class TestExportOrchestrator:
    """Tests for batch export runs."""

    def test_run_writes_mapping(self, chair, options, export_tools, sources):
        model, materials, textures = chair
        sky = sources(TextureResource(id=3000, name="sky"), "sky.png")
        orchestrator = ExportOrchestrator(
            export_tools, materials, textures + [sky], FOLDERS
        )

        summary = _run(orchestrator, options, [model], materials, textures + [sky])

        assert summary.total_items == 2
        assert summary.success_count == 2
        assert not summary.has_errors
        assert summary.mapping_path == options.mapping_path
        assert len(summary.exported_files) == 10
        mapping = MappingDocument.load(summary.mapping_path)
        assert mapping.models[1].path == "assets/content/props/chair/chair.glb"
        assert [lod.file for lod in mapping.models[1].lods] == [
            "assets/content/props/chair/chair_lod1.glb",
            "assets/content/props/chair/chair_lod2.glb",
        ]
        assert mapping.materials[101] == "assets/content/props/chair/materials/fabric.json"
        assert mapping.textures[3000] == "assets/content/textures/sky.ktx2"
        assert options.mapping_path not in summary.exported_files

    def test_failing_item_does_not_stop_run(self, options, export_tools, tool_runner, sources):
        models = [
            sources(ModelResource(id=i, name=name), f"{name}.fbx")
            for i, name in enumerate(("alpha", "broken", "gamma"), start=1)
        ]
        tool_runner.fail_on.add("broken.fbx")
        progress = []

        summary = _run(
            ExportOrchestrator(export_tools),
            options,
            models,
            progress_callback=progress.append,
        )

        assert summary.success_count == 2
        assert summary.fail_count == 1
        assert summary.success_count + summary.fail_count == summary.total_items
        assert summary.failures[0][0] == "broken"
        assert [p.item_name for p in progress] == ["alpha", "broken", "gamma"]
        assert [p.success for p in progress] == [True, False, True]
        assert progress[-1].percent_complete == pytest.approx(100.0)
        mapping = MappingDocument.load(summary.mapping_path)
        assert set(mapping.models) == {1, 3}

    def test_processing_order(self, chair, options, export_tools, sources):
        model, materials, textures = chair
        lamp_mat = MaterialResource(id=300, name="lamp_mat", parent_folder_id=20)
        sky = sources(TextureResource(id=3000, name="sky"), "sky.png")
        progress = []

        _run(
            ExportOrchestrator(export_tools, materials + [lamp_mat], textures + [sky], FOLDERS),
            options,
            [model],
            [lamp_mat],
            [sky],
            progress_callback=progress.append,
        )

        assert [p.item_name for p in progress] == ["chair", "lamp_mat", "sky"]

    def test_cancel_between_items(self, options, export_tools, sources):
        models = [
            sources(ModelResource(id=i, name=f"m{i}"), f"m{i}.fbx") for i in range(1, 4)
        ]
        cancel = asyncio.Event()

        summary = _run(
            ExportOrchestrator(export_tools),
            options,
            models,
            progress_callback=lambda progress: cancel.set(),
            cancel_event=cancel,
        )

        assert summary.cancelled
        assert summary.success_count == 1
        assert set(MappingDocument.load(summary.mapping_path).models) == {1}

    def test_failed_run_replaces_previous_mapping(
        self, options, export_tools, tool_runner, sources
    ):
        """Test that a run where every item fails leaves no stale mapping."""
        model = sources(ModelResource(id=1, name="alpha"), "alpha.fbx")
        _run(ExportOrchestrator(export_tools), options, [model])
        assert set(MappingDocument.load(options.mapping_path).models) == {1}

        tool_runner.fail_on.add("alpha.fbx")
        summary = _run(ExportOrchestrator(export_tools), options, [model])

        assert summary.fail_count == 1
        assert summary.mapping_path == options.mapping_path
        assert MappingDocument.load(options.mapping_path).is_empty

    def test_empty_selection(self, options, export_tools):
        summary = _run(ExportOrchestrator(export_tools), options)
        assert summary.total_items == 0
        assert summary.mapping_path is None
        assert not options.mapping_path.exists()

    def test_unconfigured_output_fails_fast(self, export_tools):
        with pytest.raises(ConfigurationError):
            _run(ExportOrchestrator(export_tools), ExportOptions(project_name="proj"))


class TestToolRunner:
    """Tests for running real subprocesses."""

    def test_missing_tool(self, tmp_path):
        runner = ToolRunner()
        with pytest.raises(ConversionError, match="Tool not found"):
            asyncio.run(runner.run(str(tmp_path / "no-such-tool"), []))

    def test_nonzero_exit(self):
        runner = ToolRunner()
        script = "import sys; sys.stderr.write('bad input\\n'); sys.exit(3)"
        with pytest.raises(ConversionError, match="code 3: bad input"):
            asyncio.run(runner.run(sys.executable, ["-c", script]))

    def test_success_captures_output(self):
        result = asyncio.run(ToolRunner().run(sys.executable, ["-c", "print('ok')"]))
        assert result.returncode == 0
        assert result.stdout.strip() == "ok"
