"""Example usage of the async image analyzer."""

import asyncio
import logging
import sys

# Add parent directory to path
sys.path.insert(0, "src")

from image_analyzer import (
    AnalyzerError,
    RegistryClient,
    analyze_image,
    extracted_image,
    render_summary,
)
from image_analyzer.utils.inspect import check_os_info

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    """Analyze one image and print the YAML report."""
    try:
        summary = await analyze_image("alpine:3.19")
        print(render_summary(summary, "yaml"))
    except AnalyzerError as e:
        logger.error(f"Analysis failed: {e}")


async def concurrent_operations():
    """Pull several images concurrently, each into its own root."""
    images = ["alpine:3.19", "busybox:1.36"]

    async def os_release(image_ref):
        async with RegistryClient() as client:
            async with extracted_image(image_ref, client) as (root, config):
                logger.info(f"{image_ref}: {config.os}/{config.architecture}")
                return check_os_info(root)

    results = await asyncio.gather(
        *(os_release(image) for image in images), return_exceptions=True
    )
    for image, result in zip(images, results, strict=False):
        if isinstance(result, Exception):
            logger.error(f"{image}: {result}")
        else:
            logger.info(f"{image}: {result.splitlines()[0] if result else 'no os-release'}")


if __name__ == "__main__":
    print("=== Single Image Analysis ===")
    asyncio.run(main())

    print("\n=== Concurrent Pulls ===")
    asyncio.run(concurrent_operations())
