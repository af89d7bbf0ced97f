#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright 2026 Brian Warner
"""
Timelapse for Duet Library - Shared utility functions

This module provides reusable functions for snapshot capture, frame staging,
video creation, RepRapFirmware API interactions and system validation used by
the main timelapse watcher.
"""

import os
import shutil
import subprocess
import logging
from pathlib import Path
from io import BytesIO
import requests
from PIL import Image

logger = logging.getLogger(__name__)

SNAPSHOT_EXTENSION = ".jpg"
SEQUENCE_PATTERN = "image-%015d" + SNAPSHOT_EXTENSION
OUTPUT_FRAMERATE = 25


class EncodingError(Exception):
    """Raised when ffmpeg fails to produce a timelapse video."""


# ============================================================================
# Snapshot & Image Operations
# ============================================================================


def probe_mjpeg_source(mjpeg_url, timeout=10):
    """
    Check that the MJPEG source answers a GET with HTTP 200.

    The response body is never read; the connection is closed as soon as
    the status line has been inspected.

    Args:
        mjpeg_url (str): URL of the still-image source
        timeout (int): Request timeout in seconds

    Returns:
        bool: True if the source answered with 200, False otherwise
    """
    try:
        with requests.get(mjpeg_url, timeout=timeout, stream=True) as response:
            if response.status_code == 200:
                logger.debug(f"MJPEG source {mjpeg_url} is reachable")
                return True
            logger.error(
                f"MJPEG source {mjpeg_url} answered with HTTP {response.status_code}"
            )
            return False
    except requests.exceptions.RequestException as e:
        logger.error(f"Cannot reach MJPEG source {mjpeg_url}: {e}")
        return False


def rotate_image_bytes(image_data, rotation):
    """
    Rotate image data in memory and return as bytes.

    Args:
        image_data (bytes): Image file data
        rotation (int): Rotation angle in degrees (0, 90, 180, 270)

    Returns:
        bytes: Rotated image data, or original if rotation=0 or error
    """
    if rotation == 0:
        return image_data

    if rotation not in [90, 180, 270]:
        logger.error(f"Invalid rotation angle: {rotation}")
        return image_data

    try:
        img = Image.open(BytesIO(image_data))
        rotated = img.rotate(-rotation, expand=True)

        output = BytesIO()
        rotated.save(output, format="JPEG")
        return output.getvalue()
    except Exception as e:
        logger.error(f"Error rotating image bytes: {e}")
        return image_data


def is_valid_image(image_data):
    """Return True if Pillow can identify image_data as a picture."""
    if not image_data:
        return False
    try:
        with Image.open(BytesIO(image_data)) as img:
            img.verify()
        return True
    except Exception as e:
        logger.debug(f"Snapshot payload is not an image: {e}")
        return False


def capture_snapshot(mjpeg_url, output_path, rotation=0, timeout=10):
    """
    Fetch a single frame from the MJPEG source and write it to disk.

    Args:
        mjpeg_url (str): URL returning one JPEG frame per request
        output_path (str or Path): Where the frame should be saved
        rotation (int): Rotation angle in degrees (0, 90, 180, 270)
        timeout (int): Request timeout in seconds

    Returns:
        bool: True if the frame was saved, False otherwise
    """
    try:
        logger.info(f"Capturing snapshot: {mjpeg_url} -> {output_path}")

        response = requests.get(mjpeg_url, timeout=timeout)
        if response.status_code != 200:
            logger.error(
                f"Failed to capture snapshot: HTTP {response.status_code} "
                f"from {mjpeg_url}"
            )
            return False

        image_data = response.content
        if not is_valid_image(image_data):
            logger.error(f"Failed to capture snapshot: {mjpeg_url} sent no image")
            return False

        if rotation != 0:
            image_data = rotate_image_bytes(image_data, rotation)

        with open(output_path, "wb") as f:
            f.write(image_data)

        logger.debug(f"Captured snapshot: {output_path} ({len(image_data)} bytes)")
        return True

    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to capture snapshot: {e}")
        return False
    except OSError as e:
        logger.error(f"Error writing snapshot {output_path}: {e}")
        return False


# ============================================================================
# Frame Ordering & Video Creation
# ============================================================================


def list_frames(snapshot_dir):
    """
    List captured frames in capture order.

    Snapshot names end in a sortable timestamp, so lexicographic order of
    the file names is the order they were taken in.

    Args:
        snapshot_dir (str or Path): Directory holding the snapshots

    Returns:
        list: Sorted list of Path objects
    """
    snapshot_dir = Path(snapshot_dir)
    return sorted(
        (p for p in snapshot_dir.glob(f"*{SNAPSHOT_EXTENSION}") if p.is_file()),
        key=lambda p: p.name,
    )


def stage_frames(frame_files, staging_dir):
    """
    Expose frames to ffmpeg as a contiguous zero-padded sequence.

    Each frame is hard linked (or copied, where the filesystem refuses links)
    into staging_dir under SEQUENCE_PATTERN. The originals are left alone.

    Args:
        frame_files (list): Frames in the order they should appear
        staging_dir (Path): Empty directory that receives the sequence

    Returns:
        list: (index, original Path, staged Path) tuples
    """
    staging_dir = Path(staging_dir)
    staging_dir.mkdir(parents=True, exist_ok=True)

    mapping = []
    for index, frame in enumerate(frame_files):
        staged = staging_dir / (SEQUENCE_PATTERN % index)
        try:
            os.link(frame, staged)
        except OSError:
            shutil.copy2(frame, staged)
        mapping.append((index, Path(frame), staged))

    logger.debug(f"Staged {len(mapping)} frames in {staging_dir}")
    return mapping


def build_encoder_command(
    sequence_dir, output_path, seconds_per_frame, quality=23, output_fps=None
):
    """Build the ffmpeg argument list for a staged image sequence."""
    if output_fps is None:
        output_fps = OUTPUT_FRAMERATE

    return [
        "ffmpeg",
        "-y",  # Overwrite output file if it exists
        "-framerate",
        f"1/{seconds_per_frame:g}",
        "-i",
        str(Path(sequence_dir) / SEQUENCE_PATTERN),
        "-c:v",
        "libx264",
        "-crf",
        str(quality),
        "-pix_fmt",
        "yuv420p",
        "-r",
        str(output_fps),
        "-movflags",
        "+faststart",  # Optimize for web playback
        str(output_path),
    ]


def create_video(frame_files, output_path, seconds_per_frame, quality=23, timeout=600):
    """
    Create a timelapse video from an ordered list of frames using ffmpeg.

    The frames are staged next to the output under a hidden directory, the
    encoder runs exactly once, and the staging directory is always removed.
    The original frames are never touched.

    Args:
        frame_files (list): Frames in capture order
        output_path (str or Path): Path for output video file
        seconds_per_frame (float): How long each still is shown
        quality (int): CRF quality value (0-51, lower = better)
        timeout (int): Command timeout in seconds

    Raises:
        EncodingError: If no video was produced
    """
    if not frame_files:
        raise EncodingError("No frames to encode")

    output_path = Path(output_path)
    staging_dir = output_path.parent / f".staging_{output_path.stem}"

    try:
        if staging_dir.exists():
            shutil.rmtree(staging_dir)
        stage_frames(frame_files, staging_dir)

        cmd = build_encoder_command(
            staging_dir, output_path, seconds_per_frame, quality=quality
        )

        # Log the command being executed (INFO level for visibility)
        logger.info(f"Creating video: {' '.join(cmd)}")

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)

        if result.returncode != 0:
            raise EncodingError(
                f"ffmpeg exited with status {result.returncode}: {result.stderr}"
            )
        if not os.path.exists(output_path):
            raise EncodingError(f"ffmpeg reported success but {output_path} is missing")

        file_size_mb = os.path.getsize(output_path) / (1024 * 1024)
        logger.info(f"Video created successfully: {output_path} ({file_size_mb:.2f} MB)")

    except subprocess.TimeoutExpired:
        raise EncodingError(f"ffmpeg timed out after {timeout}s")
    except OSError as e:
        raise EncodingError(f"Could not run ffmpeg: {e}")

    finally:
        if staging_dir.exists():
            try:
                shutil.rmtree(staging_dir)
                logger.debug(f"Cleaned up staging directory: {staging_dir}")
            except OSError as e:
                logger.warning(f"Failed to clean up staging directory {staging_dir}: {e}")


def delete_frames(frame_files):
    """
    Delete frame files that have been encoded.

    Returns:
        int: Number of files removed
    """
    removed = 0
    for frame in frame_files:
        try:
            Path(frame).unlink()
            removed += 1
        except FileNotFoundError:
            logger.debug(f"Frame already gone: {frame}")
        except OSError as e:
            logger.error(f"Error deleting frame {frame}: {e}")
    return removed


# ============================================================================
# RepRapFirmware HTTP API
# ============================================================================


def _printer_get(printer_url, endpoint, params, timeout):
    url = f"{printer_url.rstrip('/')}/{endpoint}"
    try:
        response = requests.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.Timeout:
        logger.debug(f"Request to {url} timed out")
        return None
    except requests.exceptions.ConnectionError:
        logger.debug(f"Cannot connect to printer at {printer_url}")
        return None
    except requests.exceptions.RequestException as e:
        logger.debug(f"Request to {url} failed: {e}")
        return None
    except ValueError as e:
        logger.debug(f"Printer sent invalid JSON from {url}: {e}")
        return None


def get_printer_status(printer_url, timeout=10):
    """
    Query the extended status (rr_status?type=2) of the printer.

    Args:
        printer_url (str): Printer base URL, e.g. http://duet.local
        timeout (int): Request timeout in seconds

    Returns:
        dict: Status payload with 'status' and 'coords', or None if error
    """
    return _printer_get(printer_url, "rr_status", {"type": 2}, timeout)


def get_file_info(printer_url, timeout=10):
    """
    Query information about the file being printed (rr_fileinfo?type=1).

    Args:
        printer_url (str): Printer base URL
        timeout (int): Request timeout in seconds

    Returns:
        dict: File information including 'fileName', or None if error
    """
    return _printer_get(printer_url, "rr_fileinfo", {"type": 1}, timeout)


def job_base_name(file_name):
    """
    Reduce a printer file name to the job basename.

    Any directory prefix (0:/gcodes/...) is dropped and the extension is
    stripped at the first '.'.

    Args:
        file_name (str): File name as reported by the printer

    Returns:
        str: Job basename, or None if nothing usable remains
    """
    if not file_name:
        return None
    name = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    name = name.split(".", 1)[0]
    return name or None


# ============================================================================
# System Validation
# ============================================================================


def check_command(cmd, name=None, version_flag="-version", timeout=15):
    """
    Check if a command exists and is executable.

    Args:
        cmd (str): Command to check
        name (str): Display name (defaults to cmd)
        version_flag (str): Flag that makes the command print its version
        timeout (int): Command timeout in seconds

    Returns:
        bool: True if command is available, False otherwise
    """
    if name is None:
        name = cmd

    try:
        result = subprocess.run(
            [cmd, version_flag], capture_output=True, text=True, timeout=timeout
        )
        # Some versions of ffmpeg return non-zero but still work
        if result.returncode == 0 or (result.stdout or result.stderr):
            logger.debug(f"✓ {name} is installed")
            return True
        else:
            logger.error(f"✗ {name} is not working properly")
            return False
    except FileNotFoundError:
        logger.error(f"✗ {name} is not installed")
        return False
    except subprocess.TimeoutExpired:
        logger.error(f"✗ {name} check timed out")
        return False
    except OSError as e:
        logger.error(f"✗ Error checking {name}: {e}")
        return False


def validate_rotation(rotation):
    """
    Validate camera rotation value.

    Args:
        rotation: Rotation value to validate

    Returns:
        int: Valid rotation value (0, 90, 180, or 270), defaults to 0 if invalid
    """
    try:
        rotation = int(rotation)
        if rotation in [0, 90, 180, 270]:
            return rotation
        else:
            logger.warning(
                f"Invalid rotation {rotation}, must be 0/90/180/270. Using 0."
            )
            return 0
    except (ValueError, TypeError):
        logger.warning(f"Invalid rotation value '{rotation}'. Using 0.")
        return 0


_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def parse_bool(value, default=False, name="value"):
    """
    Interpret a configuration string as a boolean.

    Unrecognised values log a warning and return the default.
    """
    if value is None or not value.strip():
        return default

    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False

    logger.warning(f"Invalid boolean for {name}: '{value}'. Using {default}.")
    return default
