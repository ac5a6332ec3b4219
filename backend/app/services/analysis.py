import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from app.core.config import settings
from app.prompts.analysis_prompt import CATEGORIES, MANIFEST_ANALYSIS_PROMPT, TOOL_EXTRACTION_PROMPT
from app.schemas.catalog import ManifestAnalysis, ServerConfig, ToolDescriptor

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """The language model returned nothing usable."""


def parse_json_payload(content: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of a model response.

    Accepts a bare object, a fenced ```json block, or text around the
    outermost pair of braces.

    Raises:
        ExtractionError: If no JSON object can be decoded
    """
    cleaned_content = content.strip()
    # More robustly find the JSON block
    json_match = re.search(r"```(?:json)?\s*(\{.*\})\s*```", cleaned_content, re.DOTALL)
    if json_match:
        cleaned_content = json_match.group(1)
    else:
        # Fallback to finding the first and last curly brace
        start_brace = cleaned_content.find('{')
        end_brace = cleaned_content.rfind('}')
        if start_brace != -1 and end_brace > start_brace:
            cleaned_content = cleaned_content[start_brace : end_brace + 1]

    try:
        parsed = json.loads(cleaned_content)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Failed to parse model response as JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise ExtractionError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


# Service responsible for turning README and source text into structured catalog data
class AnalysisService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model: str = model or settings.OPENAI_MODEL
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete_json(self, prompt: str) -> Dict[str, Any]:
        """
        Send a single-prompt completion constrained to a JSON object.

        Raises:
            ExtractionError: On transport errors, empty responses or invalid JSON
        """
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise ExtractionError(f"Completion request failed: {e}") from e

        if not response.choices:
            raise ExtractionError("Model returned no choices")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ExtractionError("Model returned an empty message")

        return parse_json_payload(content)

    async def analyze_readme(
        self,
        repo_name: str,
        readme: str,
        existing_manifest: Optional[List[Dict[str, Any]]] = None,
    ) -> ManifestAnalysis:
        """
        Extract name, description, categories and launch configs from a README.

        Args:
            repo_name: Catalog name of the repository (owner/repo[/subpath])
            readme: Full README text
            existing_manifest: Currently accepted configs, passed as context

        Returns:
            ManifestAnalysis; `configs` is empty when the README has no MCP server

        Raises:
            ExtractionError: If the response is malformed
        """
        prompt = MANIFEST_ANALYSIS_PROMPT.format(
            repo_name=repo_name,
            readme=readme,
            existing_manifest=json.dumps(existing_manifest or []),
            categories="\n".join(f"- {category}" for category in CATEGORIES),
        )
        data = await self.complete_json(prompt)
        if not data:
            logger.info(f"Model found no MCP server in {repo_name}")
            return ManifestAnalysis()

        raw_configs = data.get("configs") or []
        if not isinstance(raw_configs, list):
            raise ExtractionError(f"'configs' should be a list for {repo_name}, got {type(raw_configs).__name__}")

        configs = []
        for raw in raw_configs:
            try:
                configs.append(ServerConfig.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Dropping invalid config for {repo_name}: {e.errors()}")

        return ManifestAnalysis(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            category=str(data.get("category") or ""),
            configs=configs,
        )

    async def extract_tools(self, source: str, readme: str) -> List[ToolDescriptor]:
        """
        Ask the model for the tool catalog declared in `source`, with the README as fallback.

        Raises:
            ExtractionError: If the response is malformed or a tool fails validation
        """
        prompt = TOOL_EXTRACTION_PROMPT.format(source=source, readme=readme)
        data = await self.complete_json(prompt)

        raw_tools = data.get("tools") or []
        if not isinstance(raw_tools, list):
            raise ExtractionError(f"'tools' should be a list, got {type(raw_tools).__name__}")

        try:
            return [ToolDescriptor.model_validate(raw) for raw in raw_tools]
        except ValidationError as e:
            raise ExtractionError(f"Invalid tool definition: {e.errors()}") from e
