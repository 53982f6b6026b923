from typing import Dict
import asyncio
import logging

logger = logging.getLogger(__name__)

class ImageManager:
    """Remembers which images are already present so provisioning skips the pull check"""

    def __init__(self, runtime):
        self.runtime = runtime
        self._image_cache: Dict[str, bool] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def ensure_image(self, image: str) -> None:
        """Ensure image is available locally"""
        if self._image_cache.get(image):
            return
        lock = self._locks.setdefault(image, asyncio.Lock())
        async with lock:
            if self._image_cache.get(image):
                return
            await self.runtime.pull_image_if_missing(image)
            self._image_cache[image] = True
            logger.debug(f"Image {image} available")
