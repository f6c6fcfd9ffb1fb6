#!/usr/bin/env python3
"""
并发行为测试脚本
同时发送多个文件夹批次到 /api/upload，验证批次之间是否并行处理
"""

import asyncio
import aiohttp
import os
import time
from datetime import datetime


def collect_folder(folder):
    """收集文件夹下的所有文件，返回 (相对路径, 绝对路径) 列表"""
    base = os.path.dirname(os.path.abspath(folder))
    entries = []
    for root, _, names in os.walk(folder):
        for name in sorted(names):
            full_path = os.path.join(root, name)
            entries.append((os.path.relpath(full_path, base).replace(os.sep, '/'), full_path))
    return entries


async def send_request(session, request_id, url, entries):
    """发送单个批次上传请求"""
    start_time = time.time()

    try:
        data = aiohttp.FormData()
        for relative_path, full_path in entries:
            with open(full_path, 'rb') as f:
                data.add_field('files', f.read(), filename=relative_path)

        print(f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] 请求{request_id}: 开始发送 ({len(entries)} 个文件)")

        async with session.post(url, data=data) as response:
            body = await response.json()
            elapsed = time.time() - start_time
            status = response.status

            print(f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] 请求{request_id}: "
                  f"完成 (状态: {status}, 转换: {body.get('convertedCount', 0)}, "
                  f"失败: {len(body.get('errors', []))}, 耗时: {elapsed:.2f}s)")

            return {
                'request_id': request_id,
                'status': status,
                'duration': elapsed,
                'start': start_time
            }
    except Exception as e:
        elapsed = time.time() - start_time
        print(f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] 请求{request_id}: "
              f"失败 ({str(e)}, 耗时: {elapsed:.2f}s)")
        return {
            'request_id': request_id,
            'status': 'error',
            'error': str(e),
            'duration': elapsed
        }


async def run_concurrent_batches(num_requests, url, entries):
    """测试并发请求行为"""
    print(f"\n{'='*70}")
    print(f"测试场景: 同时发送 {num_requests} 个批次")
    print(f"目标URL: {url}")
    print(f"{'='*70}\n")

    async with aiohttp.ClientSession() as session:
        tasks = [
            send_request(session, i+1, url, entries)
            for i in range(num_requests)
        ]

        test_start = time.time()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        test_duration = time.time() - test_start

        print(f"\n{'='*70}")
        print(f"测试结果分析")
        print(f"{'='*70}")
        print(f"总耗时: {test_duration:.2f}s")

        successful = [r for r in results if isinstance(r, dict) and r.get('status') == 200]
        print(f"成功: {len(successful)}/{num_requests}")

        if successful:
            durations = [r['duration'] for r in successful]
            avg_duration = sum(durations) / len(durations)
            print(f"平均响应时间: {avg_duration:.2f}s")
            print(f"最快响应: {min(durations):.2f}s")
            print(f"最慢响应: {max(durations):.2f}s")

            if test_duration < avg_duration * 1.5:
                print(f"  ✅ 总时间({test_duration:.2f}s) ≈ 单个批次时间({avg_duration:.2f}s) → 并行处理")
            else:
                print(f"  ⚠️  总时间({test_duration:.2f}s) > 单个批次时间({avg_duration:.2f}s) → 存在排队或资源竞争")


async def main():
    """主测试函数"""
    BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
    TEST_FOLDER = os.getenv("TEST_FOLDER", "test_folder")  # 需要准备一个包含图片的文件夹

    if not os.path.isdir(TEST_FOLDER):
        print(f"❌ 测试文件夹不存在: {TEST_FOLDER}")
        print(f"请创建一个包含图片的文件夹，例如:")
        print(f"  mkdir -p {TEST_FOLDER}/sub && magick -size 800x600 xc:blue {TEST_FOLDER}/a.jpg "
              f"&& magick -size 800x600 xc:red {TEST_FOLDER}/sub/b.png")
        return

    entries = collect_folder(TEST_FOLDER)

    # 测试场景1: 3个并发批次（轻量级测试）
    await run_concurrent_batches(3, f"{BASE_URL}/api/upload", entries)

    await asyncio.sleep(2)

    # 测试场景2: 10个并发批次（中等压力）
    await run_concurrent_batches(10, f"{BASE_URL}/api/upload", entries)


if __name__ == "__main__":
    asyncio.run(main())
