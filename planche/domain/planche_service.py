# planche/domain/planche_service.py
import logging
from typing import List, Optional
import base64, binascii, os, time
from PIL import Image
import asyncio
import aiohttp
import psutil
import aiofiles
from concurrent.futures import ThreadPoolExecutor

from planche.config.settings import settings
from planche.delivery.schemas.body import SubjectPortrait, TemplateData
from planche.domain import compositor
from planche.domain.errors import AssetFetchError
from planche.infrastructure.cloudinary import upload_file

# --- LOGGER ---
# Dedicated module logger so render stages can be traced per request
# without depending on the root logger configuration.
logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

def _memory_mb() -> Optional[float]:
    try:
        return psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
    except Exception as mem_error:
        logger.warning(f"Could not get memory info: {mem_error}")
        return None

class PlancheService:
    """Fetches assets and runs the compositor off the event loop.

    Holds no per-render state: every call opens its own HTTP session and
    allocates its own image buffers.
    """

    def __init__(self, cpu_executor: Optional[ThreadPoolExecutor] = None, io_executor: Optional[ThreadPoolExecutor] = None):
        self.cpu_executor = cpu_executor
        self.io_executor = io_executor

    async def _load_image_bytes_async(self, src: str, session: aiohttp.ClientSession) -> bytes:
        try:
            if src.startswith(("http://", "https://")):
                async with session.get(src) as response:
                    response.raise_for_status()
                    return await response.read()
            if os.path.isfile(src):
                async with aiofiles.open(src, "rb") as f:
                    return await f.read()
            if src.startswith("data:image"):
                _, encoded = src.split(",", 1)
                return base64.b64decode(encoded, validate=True)
            return base64.b64decode(src, validate=True)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError, binascii.Error) as e:
            logger.warning(f"Failed to load image from '{src[:70]}...': {type(e).__name__}")
            raise AssetFetchError(f"Could not fetch image from {src[:70]}: {type(e).__name__}: {e}") from e

    async def fetch_bytes(self, src: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=settings.REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._load_image_bytes_async(src, session)

    async def _fetch_many(self, sources: List[str]) -> List[bytes]:
        timeout = aiohttp.ClientTimeout(total=settings.REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            tasks = [self._load_image_bytes_async(src, session) for src in sources]
            return await asyncio.gather(*tasks)

    @staticmethod
    def _background_url(template: TemplateData) -> str:
        layout = template.effective_layout()
        if not layout.background_url:
            raise AssetFetchError(f"Template {template.planche} has no background image")
        return layout.background_url

    async def _run_cpu(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.cpu_executor, fn, *args)

    async def _compose(self, background_bytes: bytes, portrait_bytes: bytes, template: TemplateData, add_watermark: bool) -> bytes:
        layout = template.effective_layout()
        run_id = template.planche
        start = time.perf_counter()
        logger.info(f"Stage 1/4: Decoding background and portrait for {run_id} ({'web' if layout.web else 'print'} layout).")
        background, portrait = await asyncio.gather(
            self._run_cpu(compositor.decode_image, background_bytes, "Background"),
            self._run_cpu(compositor.decode_image, portrait_bytes, "Portrait"),
        )
        canvas = compositor.canvas_size(background)
        logger.info(f"Canvas {canvas[0]}x{canvas[1]}, portrait {portrait.size[0]}x{portrait.size[1]} for {run_id}")

        # Slots are independent; gather keeps the declared order for stacking
        logger.info(f"Stage 2/4: Transforming {len(layout.slots)} slot(s) for {run_id}")
        placed = await asyncio.gather(*[
            self._run_cpu(compositor.transform_slot, portrait, slot, canvas) for slot in layout.slots
        ])

        logger.info(f"Stage 3/4: Compositing for {run_id} (watermark={add_watermark})")
        final_image: Image.Image = await self._run_cpu(compositor.finish, background, placed, add_watermark)

        logger.info(f"Stage 4/4: Encoding JPEG for {run_id}")
        data = await self._run_cpu(compositor.encode, final_image)

        memory_mb = _memory_mb()
        memory_note = f", memory {memory_mb:.1f}MB" if memory_mb is not None else ""
        logger.info(f"Rendered {run_id}: {len(data)} bytes in {time.perf_counter() - start:.2f}s{memory_note}")
        return data

    async def render_composite(self, portrait_bytes: bytes, template: TemplateData, add_watermark: bool) -> bytes:
        background_url = self._background_url(template)
        background_bytes = await self.fetch_bytes(background_url)
        return await self._compose(background_bytes, portrait_bytes, template, add_watermark)

    async def generate_planche(self, portrait_url: str, template: TemplateData, add_watermark: bool) -> bytes:
        background_url = self._background_url(template)
        logger.info(f"Fetching background and portrait for {template.planche}")
        background_bytes, portrait_bytes = await self._fetch_many([background_url, portrait_url])
        return await self._compose(background_bytes, portrait_bytes, template, add_watermark)

    async def publish_planche(
        self,
        subject: SubjectPortrait,
        template: TemplateData,
        add_watermark: bool = False,
        overwrite: bool = True,
    ) -> str:
        public_id = f"{subject.student_id}_{template.planche}"
        folder = settings.CLOUDINARY_FOLDER
        loop = asyncio.get_running_loop()

        if not overwrite:
            exists = await loop.run_in_executor(self.io_executor, upload_file.planche_exists, public_id, folder)
            if exists:
                logger.info(f"Planche {folder}/{public_id} already stored, skipping render")
                return upload_file.planche_url(public_id, folder)

        if not subject.portrait_url:
            raise AssetFetchError(f"Student {subject.student_id} has no portrait")
        data = await self.generate_planche(subject.portrait_url, template, add_watermark)

        start_time = time.perf_counter()
        url = await loop.run_in_executor(self.io_executor, upload_file.upload_jpeg_bytes, data, public_id, folder)
        logger.info(f"Uploaded {folder}/{public_id} in {time.perf_counter() - start_time:.2f}s")
        return url
