# plan_builder.py
import logging
import os
from typing import Any, Dict, List, Tuple

from errors import LLMCallError, PlanningError
from models import ApiDescriptor, EndpointDescriptor, FeatureDescriptor, PlanStep
from registry import EndpointRegistry
from utils import filter_candidate_ids, llm_call_helper, split_id_list, split_numbered_lines

logger = logging.getLogger(__name__)

MAX_SELECTED_APIS = int(os.getenv("MAX_SELECTED_APIS", "3"))


class PlanBuilder:
    """
    Turns a user prompt into an ordered list of PlanSteps in three LLM round trips:
    API selection -> feature selection -> endpoint sequencing.
    Every stage only narrows the candidate set it receives.
    """

    def __init__(self, llm: Any, registry: EndpointRegistry, max_selected_apis: int = MAX_SELECTED_APIS):
        if not hasattr(llm, "ainvoke"):
            raise TypeError("llm must have an 'ainvoke' method.")
        self.llm = llm
        self.registry = registry
        self.max_selected_apis = max_selected_apis
        logger.info("PlanBuilder initialized.")

    async def build_plan(self, user_prompt: str) -> List[PlanStep]:
        logger.info(f"Planning API calls for prompt: {user_prompt[:200]}")
        try:
            apis = await self._select_apis(user_prompt)
            if not apis:
                logger.info("No relevant APIs selected; the plan is empty.")
                return []

            features = await self._select_features(user_prompt, apis)
            if not features:
                logger.info("No relevant features selected; the plan is empty.")
                return []

            plan = await self._sequence_endpoints(user_prompt, features)
        except LLMCallError as e:
            raise PlanningError(f"Plan building failed: {e.message}", details=e.details, original_error=e)

        logger.info(f"Plan built with {len(plan)} steps: {[f'{s.method} {s.path_template}' for s in plan]}")
        return plan

    # --- Stage 1 ---
    async def _select_apis(self, user_prompt: str) -> List[ApiDescriptor]:
        logger.info("Stage 1: Selecting relevant APIs")
        apis = await self.registry.list_apis()
        if not apis:
            logger.warning("Endpoint registry has no APIs.")
            return []

        blocks = []
        for api in apis:
            features = await self.registry.list_features(api.id)
            blocks.append(
                f"ID: {api.id}\nAPI: {api.name}\nDescription: {api.description or 'N/A'}\n"
                f"Base URL: {api.base_url}\nFeatures: {', '.join(f.name for f in features) or 'none'}"
            )

        api_descriptions = "\n\n".join(blocks)
        prompt = f"""Analyze the user request and choose the relevant APIs (1-{self.max_selected_apis} APIs).

Available APIs:
{api_descriptions}

User request: "{user_prompt}"

Return only the IDs of the chosen APIs separated by commas (use the exact IDs from the list above):"""

        response = await llm_call_helper(self.llm, [{"role": "user", "content": prompt}])
        by_id = {api.id: api for api in apis}
        selected_ids = filter_candidate_ids(split_id_list(response), by_id.keys())
        if len(selected_ids) > self.max_selected_apis:
            logger.warning(f"LLM selected {len(selected_ids)} APIs; keeping the first {self.max_selected_apis}.")
            selected_ids = selected_ids[:self.max_selected_apis]
        logger.info(f"Stage 1 kept {len(selected_ids)} of {len(apis)} APIs")
        return [by_id[api_id] for api_id in selected_ids]

    # --- Stage 2 ---
    async def _select_features(self, user_prompt: str, apis: List[ApiDescriptor]) -> List[Tuple[ApiDescriptor, FeatureDescriptor, List[EndpointDescriptor]]]:
        logger.info("Stage 2: Selecting relevant features")
        candidates: Dict[str, Tuple[ApiDescriptor, FeatureDescriptor, List[EndpointDescriptor]]] = {}
        blocks = []
        for api in apis:
            for feature in await self.registry.list_features(api.id):
                endpoints = await self.registry.list_endpoints(feature.id)
                candidates[feature.id] = (api, feature, endpoints)
                blocks.append(
                    f"ID: {feature.id}\nFeature: {feature.name}\nAPI: {api.name}\n"
                    f"Description: {feature.description or 'N/A'}\n"
                    f"Endpoints: {', '.join(f'{e.method} {e.path}' for e in endpoints) or 'none'}"
                )
        if not candidates:
            logger.warning("Selected APIs have no features.")
            return []

        feature_descriptions = "\n\n".join(blocks)
        prompt = f"""Analyze the user request and choose the relevant features.

Available features:
{feature_descriptions}

User request: "{user_prompt}"

Return only the IDs of the chosen features separated by commas (use the exact IDs from the list above):"""

        response = await llm_call_helper(self.llm, [{"role": "user", "content": prompt}])
        selected_ids = filter_candidate_ids(split_id_list(response), candidates.keys())
        logger.info(f"Stage 2 kept {len(selected_ids)} of {len(candidates)} features")
        return [candidates[feature_id] for feature_id in selected_ids]

    # --- Stage 3 ---
    async def _sequence_endpoints(self, user_prompt: str, features: List[Tuple[ApiDescriptor, FeatureDescriptor, List[EndpointDescriptor]]]) -> List[PlanStep]:
        logger.info("Stage 3: Planning endpoint sequence")
        candidates: Dict[str, Tuple[ApiDescriptor, FeatureDescriptor, EndpointDescriptor]] = {}
        blocks = []
        for api, feature, endpoints in features:
            for endpoint in endpoints:
                if endpoint.id in candidates:
                    continue
                candidates[endpoint.id] = (api, feature, endpoint)
                blocks.append(
                    f"{len(candidates)}. ID: {endpoint.id}\n   {endpoint.method} {endpoint.path}\n"
                    f"   Feature: {feature.name}\n   API: {api.name}\n"
                    f"   Summary: {endpoint.summary or 'N/A'}\n   Description: {endpoint.description or 'N/A'}"
                )
        if not candidates:
            logger.warning("Selected features have no endpoints.")
            return []

        endpoint_descriptions = "\n\n".join(blocks)
        prompt = f"""Analyze the user request and build the sequence of endpoint calls that fulfils it.

Available endpoints:
{endpoint_descriptions}

User request: "{user_prompt}"

Return the sequence in the format:
1. endpoint_id_1
2. endpoint_id_2
3. endpoint_id_3

Only the numbers and endpoint IDs, one per line (use the exact IDs from the list above):"""

        response = await llm_call_helper(self.llm, [{"role": "user", "content": prompt}])
        # An endpoint may legitimately be called more than once
        sequence = filter_candidate_ids(split_numbered_lines(response), candidates.keys(), keep_duplicates=True)
        logger.info(f"Stage 3 kept {len(sequence)} steps over {len(candidates)} candidate endpoints")

        plan = []
        for index, endpoint_id in enumerate(sequence, start=1):
            api, feature, endpoint = candidates[endpoint_id]
            plan.append(PlanStep(
                step=index,
                endpoint_id=endpoint.id,
                api_name=api.name,
                feature_name=feature.name,
                method=endpoint.method.upper(),
                path_template=endpoint.path,
                base_url=api.base_url,
                schema_locator=api.schema_locator,
                description=endpoint.summary or endpoint.description,
            ))
        return plan
