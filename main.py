#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
文件夹批量转 WebP API

本项目基于 FastAPI 和 ImageMagick，接收以文件夹形式上传的一批文件，
识别其中的栅格图像，逐个转换为最高质量的 WebP，保留原始的相对路径，
并将所有结果打包为一个 ZIP（base64 编码）连同转换摘要一起返回。

主要端点:
- GET  /             文件夹上传界面
- GET  /health       服务健康检查
- GET  /api/upload   服务说明
- POST /api/upload   批量上传并转换
"""

from fastapi import (
    FastAPI,
    File,
    UploadFile,
    HTTPException
)
from fastapi.responses import JSONResponse, HTMLResponse
import asyncio
import os
import logging
from typing import List, Optional

import config
from archiver import ArchiveError
from pipeline import UploadedItem, is_image_file, run_pipeline, split_relative_path
from transcoder import magick_available, transcode_image

# --- 1. 应用配置 ---

# 配置日志记录器
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# --- 2. FastAPI 应用初始化 ---

app = FastAPI(
    title="文件夹批量转 WebP",
    description="上传整个文件夹，自动将其中的图像转换为最高质量的 WebP，并按原目录结构打包下载。",
    version="1.0.0"
)

# 启动时确保临时目录存在
os.makedirs(config.TEMP_DIR, exist_ok=True)

# --- 3. HTML 模板 ---

HTML_UPLOAD_PAGE = """
<!DOCTYPE html>
<html lang="zh-CN">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>文件夹批量转 WebP</title>
    <style>
        * { box-sizing: border-box; margin: 0; padding: 0; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            min-height: 100vh;
            padding: 20px;
            display: flex;
            align-items: center;
            justify-content: center;
        }
        .container {
            background: white;
            border-radius: 20px;
            box-shadow: 0 20px 60px rgba(0,0,0,0.3);
            max-width: 720px;
            width: 100%;
            padding: 40px;
        }
        h1 { color: #333; margin-bottom: 10px; font-size: 28px; text-align: center; }
        .subtitle { color: #666; text-align: center; margin-bottom: 30px; font-size: 14px; }
        .drop-zone {
            position: relative;
            border: 2px dashed #667eea;
            border-radius: 10px;
            padding: 30px;
            text-align: center;
            background: #f8f9ff;
            cursor: pointer;
            transition: all 0.3s;
        }
        .drop-zone:hover, .drop-zone.active { border-color: #764ba2; background: #f0f2ff; }
        .drop-zone input[type="file"] {
            position: absolute;
            width: 100%;
            height: 100%;
            top: 0;
            left: 0;
            opacity: 0;
            cursor: pointer;
        }
        .file-label { color: #667eea; font-weight: 600; }
        .selected { margin-top: 10px; color: #28a745; font-size: 13px; font-weight: 500; }
        .submit-btn {
            width: 100%;
            margin-top: 20px;
            padding: 15px;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            color: white;
            border: none;
            border-radius: 10px;
            font-size: 16px;
            font-weight: 600;
            cursor: pointer;
        }
        .submit-btn:disabled { opacity: 0.6; cursor: wait; }
        .result { margin-top: 25px; font-size: 14px; color: #333; }
        .folder { background: #f8f9ff; border-radius: 8px; padding: 10px 14px; margin-top: 10px; }
        .folder h3 { font-size: 14px; margin-bottom: 6px; }
        .folder li { list-style: none; color: #555; font-size: 13px; }
        .errors { margin-top: 15px; color: #c0392b; }
        .links { margin-top: 25px; text-align: center; padding-top: 25px; border-top: 1px solid #e0e0e0; }
        .links a { color: #667eea; text-decoration: none; margin: 0 15px; font-size: 14px; font-weight: 500; }
    </style>
</head>
<body>
    <div class="container">
        <h1>📁 文件夹批量转 WebP</h1>
        <p class="subtitle">保留目录结构 | 最高质量 | 一键打包下载</p>

        <div class="drop-zone" id="dropZone">
            <input type="file" id="folderInput" webkitdirectory directory multiple>
            <div class="file-label">
                📂 点击选择文件夹或将文件夹拖拽到此处
                <div style="font-size: 12px; color: #999; margin-top: 8px;">
                    支持 JPG, JPEG, PNG, GIF, BMP, TIFF, WebP，其他文件将被忽略
                </div>
            </div>
        </div>
        <div id="selected" class="selected"></div>

        <button type="button" class="submit-btn" id="submitBtn">🚀 开始转换</button>

        <div id="result" class="result"></div>

        <div class="links">
            <a href="/docs" target="_blank">📖 API 文档</a>
            <a href="/health" target="_blank">🏥 健康检查</a>
        </div>
    </div>

    <script>
        const folderInput = document.getElementById('folderInput');
        const dropZone = document.getElementById('dropZone');
        const selected = document.getElementById('selected');
        const submitBtn = document.getElementById('submitBtn');
        const resultBox = document.getElementById('result');
        let pendingFiles = [];

        function setEntries(entries) {
            // entries: [{ file, path }]，path 为文件在所选文件夹中的相对路径
            pendingFiles = entries;
            selected.textContent = pendingFiles.length ? '✓ 已选择 ' + pendingFiles.length + ' 个文件' : '';
        }

        function readEntry(entry, prefix) {
            // 递归读取拖入的文件夹，保留相对路径
            return new Promise(resolve => {
                if (entry.isFile) {
                    entry.file(file => resolve([{ file: file, path: prefix + file.name }]), () => resolve([]));
                } else if (entry.isDirectory) {
                    const reader = entry.createReader();
                    const children = [];
                    const readBatch = () => reader.readEntries(async batch => {
                        if (!batch.length) {
                            const nested = await Promise.all(children.map(child => readEntry(child, prefix + entry.name + '/')));
                            resolve(nested.flat());
                            return;
                        }
                        children.push(...batch);
                        readBatch();
                    }, () => resolve([]));
                    readBatch();
                } else {
                    resolve([]);
                }
            });
        }

        folderInput.addEventListener('change', function() {
            setEntries(Array.from(this.files).map(file => ({ file: file, path: file.webkitRelativePath || file.name })));
        });

        ['dragenter', 'dragover'].forEach(name => dropZone.addEventListener(name, e => {
            e.preventDefault();
            dropZone.classList.add('active');
        }));
        ['dragleave', 'drop'].forEach(name => dropZone.addEventListener(name, e => {
            e.preventDefault();
            dropZone.classList.remove('active');
        }));
        dropZone.addEventListener('drop', async e => {
            // dataTransfer.items 只能在事件回调中同步读取
            const entries = Array.from(e.dataTransfer.items || [])
                .map(item => item.webkitGetAsEntry ? item.webkitGetAsEntry() : null)
                .filter(Boolean);
            if (entries.length) {
                const nested = await Promise.all(entries.map(entry => readEntry(entry, '')));
                setEntries(nested.flat());
            } else {
                setEntries(Array.from(e.dataTransfer.files).map(file => ({ file: file, path: file.name })));
            }
        });

        function escapeHtml(text) {
            const div = document.createElement('div');
            div.textContent = text;
            return div.innerHTML;
        }

        function downloadZip(zipData) {
            // base64 -> 二进制 -> Blob
            const binary = atob(zipData);
            const bytes = new Uint8Array(binary.length);
            for (let i = 0; i < binary.length; i++) bytes[i] = binary.charCodeAt(i);
            const url = URL.createObjectURL(new Blob([bytes], { type: 'application/zip' }));
            const a = document.createElement('a');
            a.href = url;
            a.download = '""" + config.ARCHIVE_FILENAME + """';
            document.body.appendChild(a);
            a.click();
            URL.revokeObjectURL(url);
            document.body.removeChild(a);
        }

        function render(result) {
            let html = '<p>已上传 ' + result.count + ' 个文件，成功转换 ' + result.convertedCount + ' 个图像。</p>';
            for (const [folder, images] of Object.entries(result.groupedResults)) {
                html += '<div class="folder"><h3>📁 ' + escapeHtml(folder || '根目录') + '</h3><ul>';
                for (const img of images) {
                    html += '<li>' + escapeHtml(img.originalName) + ' → ' + escapeHtml(img.fileName)
                        + ' (' + (img.size / 1024).toFixed(1) + ' KB)</li>';
                }
                html += '</ul></div>';
            }
            if (result.errors.length) {
                html += '<div class="errors"><strong>转换失败:</strong><ul>'
                    + result.errors.map(err => '<li>• ' + escapeHtml(err) + '</li>').join('')
                    + '</ul></div>';
            }
            if (result.zipData) {
                html += '<button type="button" class="submit-btn" id="downloadBtn">⬇️ 下载 ZIP</button>';
            }
            resultBox.innerHTML = html;
            if (result.zipData) {
                document.getElementById('downloadBtn').addEventListener('click', () => downloadZip(result.zipData));
            }
        }

        submitBtn.addEventListener('click', async function() {
            if (!pendingFiles.length) return;
            const formData = new FormData();
            // 以相对路径作为文件名提交，服务端据此还原目录结构
            pendingFiles.forEach(entry => formData.append('files', entry.file, entry.path));

            submitBtn.textContent = '⏳ 转换中...';
            submitBtn.disabled = true;
            resultBox.innerHTML = '';
            try {
                const response = await fetch('/api/upload', { method: 'POST', body: formData });
                const result = await response.json();
                if (!response.ok) {
                    resultBox.innerHTML = '<div class="errors">' + escapeHtml(result.detail || '上传失败') + '</div>';
                    return;
                }
                render(result);
            } catch (err) {
                resultBox.innerHTML = '<div class="errors">上传失败: ' + escapeHtml(String(err)) + '</div>';
            } finally {
                submitBtn.textContent = '🚀 开始转换';
                submitBtn.disabled = false;
            }
        });
    </script>
</body>
</html>
"""

# --- 4. API 端点 ---

@app.get("/", response_class=HTMLResponse, summary="上传界面")
async def root():
    """
    返回文件夹上传页面。
    支持选择或拖入整个文件夹，转换完成后可直接下载 ZIP。
    """
    return HTML_UPLOAD_PAGE

@app.get("/health", summary="服务健康检查")
async def health_check():
    """
    提供 API 和 ImageMagick 依赖的健康状态。
    """
    try:
        magick_version = "Not available (image conversion will fail)"
        if magick_available():
            proc_magick = await asyncio.subprocess.create_subprocess_exec(
                'magick', '--version', stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
            stdout_m, _ = await proc_magick.communicate()
            if proc_magick.returncode == 0:
                magick_version = stdout_m.decode().split('\n')[0]

        # 检查磁盘空间
        disk_info = os.statvfs(config.TEMP_DIR)
        free_space_mb = (disk_info.f_bavail * disk_info.f_frsize) / (1024 * 1024)

        return {
            "status": "healthy",
            "imagemagick": magick_version,
            "disk_space": {"free_mb": round(free_space_mb, 2), "temp_dir": config.TEMP_DIR},
            "resource_limits": {
                "max_file_size_mb": config.MAX_FILE_SIZE_MB,
                "timeout_seconds": config.TIMEOUT_SECONDS
            }
        }
    except Exception as e:
        logger.error(f"健康检查失败: {str(e)}")
        return JSONResponse(status_code=500, content={"status": "unhealthy", "error": str(e)})

@app.get("/api/upload", summary="服务说明")
async def upload_info():
    """返回上传接口的用途说明。"""
    return {
        "message": "Folder upload API with image processing - converts images to WebP automatically"
    }

@app.post(
    "/api/upload",
    summary="批量上传并转换为 WebP",
    responses={
        200: {"description": "处理完成（可能部分失败，见 errors）"},
        400: {"description": "未上传任何文件"},
        500: {"description": "服务器内部错误（例如 ZIP 打包失败）"},
        503: {"description": "ImageMagick 不可用"}
    }
)
async def upload_folder(
    files: Optional[List[UploadFile]] = File(None, description="要上传的文件，文件名为相对路径")
):
    """
    接收一批文件并将其中的图像转换为 WebP。

    - **files**: 可重复的文件字段，每个文件名为其在文件夹中的相对路径
      （例如 `photos/2024/a.jpg`）

    单个图像转换失败不会中断整个批次，失败信息见响应中的 `errors`。
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files were uploaded.")

    logger.info(f"收到批量上传请求: {len(files)} 个文件")

    try:
        items = []
        for upload in files:
            items.append(UploadedItem(relative_path=upload.filename or "", data=await upload.read()))

        # 预检查: 存在图像时需要 ImageMagick
        has_images = any(is_image_file(split_relative_path(item.relative_path)[1]) for item in items)
        if has_images and not magick_available():
            raise HTTPException(
                status_code=503,
                detail="Image conversion is not available. ImageMagick (magick) not found."
            )

        return await run_pipeline(items, transcode=transcode_image)

    except HTTPException as http_exc:
        # 重新抛出已知的 HTTP 异常
        raise http_exc
    except ArchiveError as e:
        logger.error(f"ZIP 打包失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process upload.")
    except Exception as e:
        # 捕获所有其他意外错误
        logger.error(f"发生意外错误: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process upload.")
    finally:
        # 确保关闭上传的文件句柄
        for upload in files:
            await upload.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False
    )
