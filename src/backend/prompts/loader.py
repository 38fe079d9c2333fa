"""
提示词加载器

每个 YAML 模板包含：
    system_prompt   系统提示词（Jinja2）
    user_prompt     用户消息（Jinja2，可选）
    variables       默认变量
    settings        调用参数（temperature、max_tokens、json_mode）
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError


class PromptLoadError(Exception):
    """提示词加载异常"""


class PromptRenderError(Exception):
    """提示词渲染异常"""


class PromptLoader:
    """
    提示词加载器

    使用示例：
        loader = PromptLoader()
        messages = loader.get_messages("explanation_evaluation", transcript="...")
        settings = loader.get_settings("explanation_evaluation")
    """

    def __init__(self, templates_dir: Optional[Path] = None, enable_cache: bool = True):
        if templates_dir is None:
            self.templates_dir = Path(__file__).parent / "templates"
        else:
            self.templates_dir = Path(templates_dir)
        self.enable_cache = enable_cache
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._env = Environment(
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )

    def load(self, name: str) -> Dict[str, Any]:
        """
        加载提示词配置

        Raises:
            PromptLoadError: 文件不存在或格式错误
        """
        with self._lock:
            if self.enable_cache and name in self._cache:
                return self._cache[name]

            file_path = self.templates_dir / f"{name}.yaml"
            if not file_path.exists():
                raise PromptLoadError(f"Prompt template not found: {file_path}")

            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise PromptLoadError(f"Failed to parse YAML: {e}")

            if "system_prompt" not in config:
                raise PromptLoadError(f"Missing required field 'system_prompt' in {name}.yaml")

            if self.enable_cache:
                self._cache[name] = config
            return config

    def render(self, name: str, template_key: str = "system_prompt", **variables) -> str:
        """
        渲染指定模板

        Raises:
            PromptRenderError: 模板不存在或渲染失败
        """
        config = self.load(name)
        template_content = config.get(template_key)
        if not template_content:
            raise PromptRenderError(f"Template '{template_key}' not found in {name}.yaml")

        merged_vars = {**(config.get("variables") or {}), **variables}
        try:
            return self._env.from_string(template_content).render(**merged_vars).strip()
        except TemplateError as e:
            raise PromptRenderError(f"Failed to render template '{name}.{template_key}': {e}")

    def get_messages(self, name: str, **variables) -> List[Dict[str, str]]:
        """构建 OpenAI 格式的消息列表（system + 可选 user）"""
        config = self.load(name)
        messages = [{"role": "system", "content": self.render(name, "system_prompt", **variables)}]
        if config.get("user_prompt"):
            messages.append({"role": "user", "content": self.render(name, "user_prompt", **variables)})
        return messages

    def get_settings(self, name: str) -> Dict[str, Any]:
        """获取模板声明的调用参数"""
        return dict(self.load(name).get("settings") or {})

    def list_prompts(self) -> List[str]:
        if not self.templates_dir.exists():
            return []
        return sorted(f.stem for f in self.templates_dir.glob("*.yaml"))

    def clear_cache(self):
        with self._lock:
            self._cache.clear()


# 全局默认实例
prompt_loader = PromptLoader(enable_cache=True)
