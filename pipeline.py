#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
批量转换流水线

接收一组 (相对路径, 字节) 上传项，识别其中的图像并逐个转换为 WebP，
按文件夹重新分组、打包为 ZIP，并生成最终的响应文档。

单个文件的转换失败只记录为错误信息，不会中断其余文件的处理。
所有状态均在单次调用内创建并丢弃，请求之间不共享任何可变状态。
"""

import asyncio
import base64
import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import config
from archiver import build_archive
from transcoder import TranscodeError, output_name_for, transcode_image

logger = logging.getLogger(__name__)

Transcoder = Callable[[bytes, str], Awaitable[bytes]]


# --- 1. 数据类型 ---

@dataclass(frozen=True)
class UploadedItem:
    relative_path: str
    data: bytes


@dataclass(frozen=True)
class ConversionRecord:
    original_name: str
    folder: str
    converted_bytes: bytes
    output_name: str
    mime_type: str
    source_index: int = 0

    def summary(self) -> dict:
        """响应中的摘要：去掉原始字节，替换为字节长度。"""
        return {
            "originalName": self.original_name,
            "fileName": self.output_name,
            "folder": self.folder,
            "mimeType": self.mime_type,
            "size": len(self.converted_bytes),
        }


@dataclass(frozen=True)
class ConversionFailure:
    description: str
    source_index: int = 0


@dataclass(frozen=True)
class LedgerSnapshot:
    records: Tuple[ConversionRecord, ...]
    failures: Tuple[ConversionFailure, ...]


@dataclass
class BatchOutcome:
    """一个批次处理完成后的全部结果（尚未打包）。"""

    manifest: List[str]
    records: List[ConversionRecord]
    grouped: Dict[str, List[ConversionRecord]]
    failures: List[ConversionFailure]
    skipped: int


# --- 2. 路径拆分与图像识别 ---

def split_relative_path(relative_path: str) -> Tuple[str, str]:
    """
    将相对路径拆分为 (文件夹, 文件名)。

    反斜杠视为 "/"；空段、"." 和 ".." 会被丢弃，保证打包后的路径
    既不是绝对路径，也不会越出 ZIP 根目录。根目录下的文件夹为 ""。
    """
    parts = [
        part for part in relative_path.replace("\\", "/").split("/")
        if part not in ("", ".", "..")
    ]
    if not parts:
        return "", ""
    return "/".join(parts[:-1]), parts[-1]


def join_relative_path(folder: str, filename: str) -> str:
    return f"{folder}/{filename}" if folder else filename


def is_image_file(filename: str) -> bool:
    """仅根据扩展名（最后一个 "." 之后，小写）判断是否为可转换的栅格图像。"""
    _, dot, extension = filename.rpartition(".")
    return bool(dot) and extension.lower() in config.IMAGE_EXTENSIONS


# --- 3. 结果登记 ---

class ConversionLedger:
    """
    收集单个批次内每一项的转换结果（成功记录或失败信息）。

    append 可被并发调用；顺序不作保证，排序由 order_records 负责。
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[ConversionRecord] = []
        self._failures: List[ConversionFailure] = []

    def append(self, outcome: Union[ConversionRecord, ConversionFailure]):
        with self._lock:
            if isinstance(outcome, ConversionRecord):
                self._records.append(outcome)
            elif isinstance(outcome, ConversionFailure):
                self._failures.append(outcome)
            else:
                raise TypeError(f"unsupported ledger entry: {type(outcome).__name__}")

    def snapshot(self) -> LedgerSnapshot:
        """所有项处理完毕后读取。失败信息按提交顺序排列。"""
        with self._lock:
            return LedgerSnapshot(
                records=tuple(self._records),
                failures=tuple(sorted(self._failures, key=lambda f: f.source_index)),
            )


# --- 4. 排序与分组 ---

def _sort_key(record: ConversionRecord):
    return (record.folder, record.output_name, record.original_name, record.source_index)


def _resolve_collisions(records: Sequence[ConversionRecord]) -> List[ConversionRecord]:
    """
    同一文件夹内输出名重复时（如 a.jpg 与 a.JPG 都变为 a.webp），
    排序在前的保留原名，其余依次改为 "<stem>-<n>.webp"，n 取该文件夹内未被占用的最小值。
    """
    taken: Dict[str, set] = {}
    for record in records:
        taken.setdefault(record.folder, set()).add(record.output_name)

    seen = set()
    resolved = []
    for record in sorted(records, key=_sort_key):
        key = (record.folder, record.output_name)
        if key not in seen:
            seen.add(key)
            resolved.append(record)
            continue

        stem, dot, extension = record.output_name.rpartition(".")
        n = 1
        while f"{stem}-{n}{dot}{extension}" in taken[record.folder]:
            n += 1
        new_name = f"{stem}-{n}{dot}{extension}"
        taken[record.folder].add(new_name)
        seen.add((record.folder, new_name))
        logger.warning(f"输出文件名冲突: {join_relative_path(record.folder, record.output_name)} -> {new_name}")
        resolved.append(dataclasses.replace(record, output_name=new_name))
    return resolved


def order_records(records: Sequence[ConversionRecord]) -> List[ConversionRecord]:
    """按 (文件夹, 输出文件名) 升序排列成功记录，先消除同名冲突。"""
    return sorted(_resolve_collisions(records), key=_sort_key)


def group_by_folder(ordered: Sequence[ConversionRecord]) -> Dict[str, List[ConversionRecord]]:
    """按文件夹划分已排序的记录，保持文件夹内的顺序。"""
    grouped: Dict[str, List[ConversionRecord]] = {}
    for record in ordered:
        grouped.setdefault(record.folder, []).append(record)
    return grouped


# --- 5. 批次处理 ---

async def _convert_item(
    index: int,
    item: UploadedItem,
    folder: str,
    filename: str,
    transcode: Transcoder,
    ledger: ConversionLedger
):
    """转换单个图像，并将结果（成功或失败）登记到 ledger。"""
    relative_path = join_relative_path(folder, filename)
    try:
        converted = await transcode(item.data, filename)
    except TranscodeError as e:
        message = f"Failed to convert {relative_path}: {e}"
        logger.warning(message)
        ledger.append(ConversionFailure(description=message, source_index=index))
        return

    output_name = output_name_for(filename)
    ledger.append(ConversionRecord(
        original_name=filename,
        folder=folder,
        converted_bytes=converted,
        output_name=output_name,
        mime_type=config.OUTPUT_MIME_TYPE,
        source_index=index,
    ))
    logger.info(f"转换成功: {relative_path} -> {output_name}")


async def convert_batch(
    items: Sequence[UploadedItem],
    transcode: Optional[Transcoder] = None
) -> BatchOutcome:
    """
    处理一个批次：拆分路径、筛选图像、并发转换、排序分组。

    Args:
        items: 上传项序列。
        transcode: 单项转换函数，默认使用 ImageMagick 实现。

    Returns:
        BatchOutcome，其中 manifest 包含所有上传项（无论是否为图像）。
    """
    transcode = transcode or transcode_image
    ledger = ConversionLedger()
    manifest = []
    tasks = []
    skipped = 0

    for index, item in enumerate(items):
        folder, filename = split_relative_path(item.relative_path)
        manifest.append(join_relative_path(folder, filename))
        if not is_image_file(filename):
            skipped += 1
            continue
        tasks.append(_convert_item(index, item, folder, filename, transcode, ledger))

    logger.info(f"批次开始: 共 {len(items)} 个文件, 其中 {len(tasks)} 个图像")
    futures = [asyncio.ensure_future(task) for task in tasks]
    try:
        await asyncio.gather(*futures)
    except BaseException:
        # 批次级错误：取消其余仍在运行的项，等待其清理完毕后再抛出
        for future in futures:
            future.cancel()
        await asyncio.gather(*futures, return_exceptions=True)
        raise

    snapshot = ledger.snapshot()
    ordered = order_records(snapshot.records)
    return BatchOutcome(
        manifest=manifest,
        records=ordered,
        grouped=group_by_folder(ordered),
        failures=list(snapshot.failures),
        skipped=skipped,
    )


# --- 6. 响应组装 ---

def assemble_response(outcome: BatchOutcome, archive: Optional[bytes]) -> dict:
    """合并批次结果与 ZIP 数据为最终响应文档。没有成功项时不包含 zipData。"""
    response = {
        "message": "Upload successful",
        "files": list(outcome.manifest),
        "count": len(outcome.manifest),
        "convertedImages": [record.summary() for record in outcome.records],
        "convertedCount": len(outcome.records),
        "groupedResults": {
            folder: [record.summary() for record in records]
            for folder, records in outcome.grouped.items()
        },
        "errors": [failure.description for failure in outcome.failures],
    }
    if archive is not None:
        response["zipData"] = base64.b64encode(archive).decode("ascii")
    return response


async def run_pipeline(
    items: Sequence[UploadedItem],
    transcode: Optional[Transcoder] = None
) -> dict:
    """完整流水线：转换 -> 打包 -> 组装响应。ArchiveError 会向上抛出。"""
    outcome = await convert_batch(items, transcode=transcode)
    archive = build_archive(outcome.records) if outcome.records else None
    logger.info(
        f"批次完成: 成功 {len(outcome.records)}, 失败 {len(outcome.failures)}, "
        f"跳过 {outcome.skipped}"
    )
    return assemble_response(outcome, archive)
