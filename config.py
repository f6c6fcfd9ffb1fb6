#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
应用配置

资源限制与输出参数。所有可调项均可通过环境变量覆盖，在导入时读取一次。
"""

import os
import tempfile

# --- 1. 资源限制 ---

MAX_FILE_SIZE_MB = int(os.getenv("MAX_FILE_SIZE_MB", "200"))  # 单个图像允许的最大大小 (MB)
TIMEOUT_SECONDS = int(os.getenv("TIMEOUT_SECONDS", "300"))    # 单次 Magick 进程执行的超时时间 (秒)
TEMP_DIR = os.getenv("TEMP_DIR", tempfile.gettempdir())       # 临时文件存储目录，优先使用环境变量，否则使用系统临时目录

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- 2. 输出参数 ---

OUTPUT_FORMAT = "webp"
OUTPUT_MIME_TYPE = "image/webp"
OUTPUT_QUALITY = 100          # 最高质量
ZIP_COMPRESSION_LEVEL = 9     # 最高压缩级别
ARCHIVE_FILENAME = "converted_images.zip"

# 可转换的栅格图像扩展名（小写，不含点）
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp"})

# 可能包含多帧（动画）的输入格式，转换时需要 -coalesce
ANIMATED_EXTENSIONS = frozenset({"gif", "webp", "png"})
