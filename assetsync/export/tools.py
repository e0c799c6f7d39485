"""Wrappers around the external conversion executables.

Each wrapper builds a command line, runs it through :class:`ToolRunner`
and checks that the expected output file exists. Any failure surfaces as
:class:`~assetsync.exceptions.ConversionError`.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..config import (
    ENV_FBX2GLTF_PATH,
    ENV_GLTFPACK_PATH,
    ENV_KTX_PATH,
    ENV_ORM_PACKER_PATH,
    Config,
)
from ..exceptions import ConversionError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 600.0  # seconds


@dataclass
class ToolResult:
    returncode: int
    stdout: str
    stderr: str


class ToolRunner:
    """Runs an external tool without blocking the event loop."""

    def __init__(self, timeout: float = DEFAULT_TOOL_TIMEOUT):
        self.timeout = timeout

    async def run(
        self, executable: str, args: list[str], cwd: Optional[Path] = None
    ) -> ToolResult:
        """Run a command and wait for it.

        Raises:
            ConversionError: If the tool is missing, times out or exits non-zero
        """
        cmd_display = " ".join([executable, *args])
        logger.debug(f"Running: {cmd_display}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError as e:
            raise ConversionError(f"Tool not found: {executable}") from e
        except OSError as e:
            raise ConversionError(f"Cannot start {executable}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ConversionError(
                f"{Path(executable).name} timed out after {self.timeout:.0f}s"
            ) from e

        result = ToolResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise ConversionError(
                f"{Path(executable).name} exited with code {result.returncode}"
                + (f": {detail[-1]}" if detail else "")
            )
        return result


def _require_output(path: Path, tool: str) -> Path:
    if not path.is_file():
        raise ConversionError(f"{tool} reported success but produced no {path.name}")
    return path


class ModelConverter:
    """FBX to GLB conversion (FBX2glTF) and LOD generation (gltfpack)."""

    def __init__(
        self,
        runner: ToolRunner,
        fbx2gltf_path: str = "FBX2glTF",
        gltfpack_path: str = "gltfpack",
    ):
        self.runner = runner
        self.fbx2gltf_path = fbx2gltf_path
        self.gltfpack_path = gltfpack_path

    async def convert(self, source: Path, output_dir: Path, name: str) -> Path:
        """Convert a source model to ``{output_dir}/{name}.glb``.

        GLB sources are copied unchanged.
        """
        output = output_dir / f"{name}.glb"
        output_dir.mkdir(parents=True, exist_ok=True)
        if not source.is_file():
            raise ConversionError(f"Model source not found: {source}")

        if source.suffix.lower() == ".glb":
            if source.resolve() != output.resolve():
                await asyncio.to_thread(shutil.copyfile, source, output)
            return output

        # FBX2glTF appends the extension itself
        await self.runner.run(
            self.fbx2gltf_path,
            ["--binary", "--input", str(source), "--output", str(output.with_suffix(""))],
        )
        return _require_output(output, "FBX2glTF")

    async def generate_lods(
        self, glb_path: Path, output_dir: Path, name: str, levels: int
    ) -> list[Path]:
        """Write ``{name}_lod{i}.glb`` for i in 1..levels, halving triangles each step."""
        lod_paths = []
        for level in range(1, levels + 1):
            ratio = 0.5**level
            output = output_dir / f"{name}_lod{level}.glb"
            await self.runner.run(
                self.gltfpack_path,
                ["-i", str(glb_path), "-o", str(output), "-si", f"{ratio:.4f}"],
            )
            lod_paths.append(_require_output(output, "gltfpack"))
        return lod_paths


class TextureConverter:
    """Texture to KTX2 conversion with ``ktx create``."""

    def __init__(self, runner: ToolRunner, ktx_path: str = "ktx"):
        self.runner = runner
        self.ktx_path = ktx_path

    async def convert(
        self,
        source: Path,
        output: Path,
        quality: int = 128,
        settings: Optional[dict[str, Any]] = None,
    ) -> Path:
        """Encode a texture as Basis-compressed KTX2 with mipmaps.

        Args:
            source: Source image
            output: Target .ktx2 file
            quality: Basis quality level (1-255)
            settings: Saved per-texture settings; ``format``, ``encode``,
                ``normal_map`` and ``mipmaps`` are honoured
        """
        settings = settings or {}
        if not source.is_file():
            raise ConversionError(f"Texture source not found: {source}")
        output.parent.mkdir(parents=True, exist_ok=True)

        args = [
            "create",
            "--format",
            settings.get("format", "R8G8B8A8_SRGB"),
            "--encode",
            settings.get("encode", "basis-lz"),
            "--qlevel",
            str(settings.get("quality", quality)),
        ]
        if settings.get("mipmaps", True):
            args.append("--generate-mipmap")
        if settings.get("normal_map"):
            args.append("--normal-mode")
        args.extend([str(source), str(output)])

        await self.runner.run(self.ktx_path, args)
        return _require_output(output, "ktx")


class PackingMode(str, Enum):
    """Channel layout of a packed texture."""

    OG = "og"
    """AO + gloss"""

    OGM = "ogm"
    """AO + gloss + metalness"""


def determine_packing_mode(
    has_ao: bool, has_gloss: bool, has_metalness: bool
) -> Optional[PackingMode]:
    """Pick the packing layout for the maps a material has, if any."""
    if has_ao and has_gloss and has_metalness:
        return PackingMode.OGM
    if has_ao and has_gloss:
        return PackingMode.OG
    return None


class TexturePacker:
    """Packs AO, gloss and metalness maps into one KTX2 texture."""

    def __init__(self, runner: ToolRunner, packer_path: str = "orm-packer"):
        self.runner = runner
        self.packer_path = packer_path

    async def pack(
        self,
        mode: PackingMode,
        output: Path,
        ao: Path,
        gloss: Path,
        metalness: Optional[Path] = None,
        quality: int = 128,
        apply_toksvig: bool = True,
        normal: Optional[Path] = None,
    ) -> Path:
        """Pack the channel sources into ``output``.

        The normal map, when given, drives Toksvig gloss compensation.
        """
        output.parent.mkdir(parents=True, exist_ok=True)
        args = ["--mode", mode.value, "--ao", str(ao), "--gloss", str(gloss)]
        if mode == PackingMode.OGM:
            if metalness is None:
                raise ConversionError("OGM packing needs a metalness map")
            args.extend(["--metalness", str(metalness)])
        if apply_toksvig:
            args.append("--toksvig")
            if normal is not None:
                args.extend(["--normal", str(normal)])
        args.extend(["--quality", str(quality), "--output", str(output)])

        await self.runner.run(self.packer_path, args)
        return _require_output(output, "ORM packer")


@dataclass
class ExportTools:
    """The converters one export run uses."""

    models: ModelConverter
    textures: TextureConverter
    packer: TexturePacker

    @classmethod
    def from_config(
        cls, cfg: Config, runner: Optional[ToolRunner] = None
    ) -> "ExportTools":
        runner = runner or ToolRunner()
        return cls(
            models=ModelConverter(
                runner,
                fbx2gltf_path=cfg.tool_path(ENV_FBX2GLTF_PATH, "FBX2glTF"),
                gltfpack_path=cfg.tool_path(ENV_GLTFPACK_PATH, "gltfpack"),
            ),
            textures=TextureConverter(runner, cfg.tool_path(ENV_KTX_PATH, "ktx")),
            packer=TexturePacker(
                runner, cfg.tool_path(ENV_ORM_PACKER_PATH, "orm-packer")
            ),
        )
