"""
GUI Agent 示例 - 基于 Playwright + OpenAI 兼容视觉模型的浏览器自动化

运行前在 .env 或环境变量中设置：
    OPENAI_API_KEY / OPENAI_BASE_URL / OPENAI_MODEL / UI_TARS_VERSION

依赖安装：
    pip install -e .
    playwright install chromium

运行示例：
    python web_ui_agent.py "在搜索框中输入 Playwright 并搜索" https://cn.bing.com
"""

import asyncio
import logging
import sys

from playwright.async_api import async_playwright

from gui_agent import GUIAgent, ModelConfig, PlaywrightController, RetryConfig, RetryPolicies
from gui_agent.config import max_loop_count_from_env, model_version_from_env


def on_data(payload: dict):
    state = payload["data"]
    for turn in state.conversation:
        if turn.author == "gpt":
            print(f"[思考/动作] {turn.value}")
    if state.is_terminal:
        print(f"[Agent] 结束状态：{state.status.value}")


def on_error(payload: dict):
    error = payload["error"]
    print(f"[错误] {error['code']}: {error['message']}")


async def run_agent(instruction: str, start_url: str) -> None:
    """
    启动浏览器并运行 Agent，直到任务完成或达到上限。
    """
    config = ModelConfig.from_env(require_api_key=True)

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=False)
        page = await browser.new_page(viewport={"width": 1280, "height": 800})
        await page.goto(start_url)
        await asyncio.sleep(2)

        agent = GUIAgent(
            operator=PlaywrightController(page),
            model=config,
            max_loop_count=max_loop_count_from_env(),
            retry=RetryPolicies(
                screenshot=RetryConfig(max_retries=2, wait_seconds=1),
                model=RetryConfig(max_retries=3, wait_seconds=2),
                execute=RetryConfig(max_retries=1, wait_seconds=1),
            ),
            ui_tars_version=model_version_from_env(),
            loop_interval=1,
            on_data=on_data,
            on_error=on_error,
        )
        try:
            await agent.run(instruction)
        finally:
            await browser.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # 示例用法：修改为你的指令与目标网址
    user_instruction = sys.argv[1] if len(sys.argv) > 1 else "在页面上搜索今天天气怎么样并提交"
    url = sys.argv[2] if len(sys.argv) > 2 else "https://www.baidu.com"

    asyncio.run(run_agent(user_instruction, url))
