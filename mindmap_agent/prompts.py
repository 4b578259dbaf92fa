"""
Prompts for the Mindmap Agent pipeline
Every prompt opens with a task header line and asks for a JSON-only answer
"""

from typing import Any, Dict, Optional, Sequence
import json

from .models import ConsolidatedTheme


MAX_SNIPPET_CHARS = 800
MAX_FILES_LISTED = 20


def theme_payload(theme: ConsolidatedTheme, include_code: bool = True) -> Dict[str, Any]:
    """Compact JSON view of a theme for prompt context"""
    payload: Dict[str, Any] = {
        "name": theme.name,
        "description": theme.description,
        "level": theme.level,
        "businessImpact": theme.business_impact,
        "affectedFiles": theme.affected_files[:MAX_FILES_LISTED],
    }
    if include_code and theme.code_snippets:
        payload["codeSnippets"] = "\n".join(theme.code_snippets)[:MAX_SNIPPET_CHARS]
    return payload


class MindmapPrompts:
    """Collection of prompts for the mindmap consolidation and expansion workflow"""

    TASK_SIMILARITY = "TASK: PAIRWISE THEME SIMILARITY"
    TASK_BATCH_SIMILARITY = "TASK: BATCH THEME SIMILARITY"
    TASK_NAMING = "TASK: MERGED THEME NAMING"
    TASK_DOMAIN = "TASK: BUSINESS DOMAIN CLASSIFICATION"
    TASK_EXPANSION_DECISION = "TASK: EXPANSION DECISION"
    TASK_SUB_THEMES = "TASK: SUB-THEME ENUMERATION"
    TASK_DUPLICATES = "TASK: SIBLING DUPLICATE DETECTION"
    TASK_SECOND_PASS = "TASK: CROSS-BATCH DUPLICATE REVIEW"
    TASK_CROSS_LEVEL = "TASK: CROSS-LEVEL THEME COMPARISON"

    @staticmethod
    def get_mindmap_system_context() -> str:
        """Shared context about the mindmap being built"""
        return """
**MINDMAP CONTEXT**
You help organise the code changes of a pull request into a hierarchical mindmap of themes.
- Root themes describe business capabilities affected by the change.
- Deeper themes narrow down to atomic, independently testable units of code change.
- Every theme lists the files it touches and the literal code snippets that changed.

Respond with JSON only. Do not wrap the JSON in prose."""

    @staticmethod
    def similarity_prompt(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> str:
        """Pairwise "should these merge?" prompt"""
        return f"""{MindmapPrompts.TASK_SIMILARITY}
{MindmapPrompts.get_mindmap_system_context()}

Decide whether these two themes describe the same logical change and should be merged into one theme.
Merge only when both themes cover the same purpose; related but distinct work stays separate.

Theme 1:
{json.dumps(theme_payload(theme1), indent=2)}

Theme 2:
{json.dumps(theme_payload(theme2), indent=2)}

Answer with:
{{"shouldMerge": true|false, "confidence": 0.0-1.0, "reasoning": "one sentence"}}"""

    @staticmethod
    def batch_similarity_prompt(pairs: Sequence[Dict[str, Any]]) -> str:
        """
        Several similarity decisions folded into one prompt

        Args:
            pairs: Dicts with ``pairId``, ``theme1`` and ``theme2`` payloads

        Returns:
            str: Prompt asking for one result per pairId
        """
        return f"""{MindmapPrompts.TASK_BATCH_SIMILARITY}
{MindmapPrompts.get_mindmap_system_context()}

For every pair below decide whether the two themes describe the same logical change and should be merged.
Return exactly one result per pairId, using the pairId given.

Pairs:
{json.dumps(list(pairs), indent=2)}

Answer with:
{{"results": [{{"pairId": "0", "shouldMerge": true|false, "confidence": 0.0-1.0, "reasoning": "one sentence"}}]}}"""

    @staticmethod
    def merged_theme_naming_prompt(themes: Sequence[ConsolidatedTheme]) -> str:
        """Unified name and description for themes being merged"""
        summaries = [
            {"name": theme.name, "description": theme.description, "businessImpact": theme.business_impact}
            for theme in themes
        ]
        return f"""{MindmapPrompts.TASK_NAMING}
{MindmapPrompts.get_mindmap_system_context()}

These themes are being merged into one. Write a unified name and description.
The name must be 3 to 50 characters, a short noun phrase, with no sentence punctuation.

Themes:
{json.dumps(summaries, indent=2)}

Answer with:
{{"name": "Unified theme name", "description": "One or two sentences"}}"""

    @staticmethod
    def domain_classification_prompt(theme: ConsolidatedTheme) -> str:
        """Business domain of one theme"""
        return f"""{MindmapPrompts.TASK_DOMAIN}
{MindmapPrompts.get_mindmap_system_context()}

Classify the business domain this theme belongs to, in two to four words
(for example "User Management", "Payment Processing", "Developer Tooling").

Theme:
{json.dumps(theme_payload(theme, include_code=False), indent=2)}

Answer with:
{{"domain": "Domain Name", "confidence": 0.0-1.0, "reasoning": "one sentence"}}"""

    @staticmethod
    def depth_guidance(depth: int) -> str:
        if depth < 3:
            return (
                "At this depth a unit is a business capability or user-facing feature. "
                "Split only when the theme clearly covers several distinct capabilities."
            )
        return (
            "At this depth a unit is an atomic, independently testable code change, "
            "such as one function, one condition or one configuration value. "
            "Split only when the theme still combines several such changes."
        )

    @staticmethod
    def expansion_decision_prompt(
        theme: ConsolidatedTheme,
        depth: int,
        parent: Optional[ConsolidatedTheme] = None,
        siblings: Sequence[ConsolidatedTheme] = ()
    ) -> str:
        """Should this theme be decomposed further, and into what"""
        parent_section = ""
        if parent is not None:
            parent_section = f"""
Parent theme:
{json.dumps(theme_payload(parent, include_code=False), indent=2)}
"""

        sibling_section = ""
        if siblings:
            sibling_names = [sibling.name for sibling in siblings]
            sibling_section = f"""
Sibling themes (do not propose sub-themes overlapping these):
{json.dumps(sibling_names, indent=2)}
"""

        return f"""{MindmapPrompts.TASK_EXPANSION_DECISION}
{MindmapPrompts.get_mindmap_system_context()}

Current depth: {depth}
{MindmapPrompts.depth_guidance(depth)}
{parent_section}{sibling_section}
Theme to evaluate:
{json.dumps(theme_payload(theme), indent=2)}

Decide whether this theme should be expanded into sub-themes or is atomic.
When expanding, propose sub-themes that each claim a subset of the theme's affected files.

Answer with:
{{"shouldExpand": true|false, "isAtomic": true|false, "reasoning": "one sentence",
 "subThemes": [{{"name": "...", "description": "...", "businessContext": "...", "files": ["..."], "rationale": "..."}}]}}"""

    @staticmethod
    def sub_theme_prompt(
        theme: ConsolidatedTheme,
        depth: int,
        siblings: Sequence[ConsolidatedTheme] = ()
    ) -> str:
        """Enumerate children of a theme already chosen for expansion"""
        sibling_names = [sibling.name for sibling in siblings]
        return f"""{MindmapPrompts.TASK_SUB_THEMES}
{MindmapPrompts.get_mindmap_system_context()}

This theme has been chosen for expansion at depth {depth}. List its sub-themes.
{MindmapPrompts.depth_guidance(depth + 1)}
Each sub-theme must only claim files from the theme's affected files.
Existing siblings: {json.dumps(sibling_names)}

Theme:
{json.dumps(theme_payload(theme), indent=2)}

Answer with:
{{"subThemes": [{{"name": "...", "description": "...", "businessContext": "...", "files": ["..."], "rationale": "..."}}]}}"""

    @staticmethod
    def duplicate_detection_prompt(themes: Sequence[ConsolidatedTheme]) -> str:
        """Which sibling themes (1-based indices) describe literally the same change"""
        numbered = [
            {"index": index, **theme_payload(theme)}
            for index, theme in enumerate(themes, start=1)
        ]
        return f"""{MindmapPrompts.TASK_DUPLICATES}
{MindmapPrompts.get_mindmap_system_context()}

Identify groups of themes below that describe literally the same code change.
When in doubt, keep themes separate. Themes that are merely related are NOT duplicates.

Themes:
{json.dumps(numbered, indent=2)}

Answer with (use the 1-based indices above, omit themes with no duplicate):
{{"groups": [{{"themeIndices": [1, 3], "reasoning": "one sentence"}}]}}"""

    @staticmethod
    def second_pass_dedup_prompt(themes: Sequence[ConsolidatedTheme]) -> str:
        """Conservative review across first-pass survivors"""
        numbered = [
            {
                "index": index,
                "name": theme.name,
                "description": theme.description,
                "affectedFiles": theme.affected_files[:MAX_FILES_LISTED],
            }
            for index, theme in enumerate(themes, start=1)
        ]
        return f"""{MindmapPrompts.TASK_SECOND_PASS}
{MindmapPrompts.get_mindmap_system_context()}

These themes survived a first deduplication pass done in separate batches.
Report only groups that are certainly the same change. Prefer missing a duplicate over merging distinct work.

Themes:
{json.dumps(numbered, indent=2)}

Answer with (1-based indices, empty list when nothing is certain):
{{"duplicateGroups": [{{"themeIndices": [2, 5], "reasoning": "one sentence"}}]}}"""

    @staticmethod
    def cross_level_prompt(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> str:
        """Relationship between two themes in different branches or levels"""
        return f"""{MindmapPrompts.TASK_CROSS_LEVEL}
{MindmapPrompts.get_mindmap_system_context()}

Compare two themes from different parts of the mindmap hierarchy.
relationshipType is one of: duplicate, overlap, related, distinct.
action is one of: merge_up (keep the higher-level theme), merge_down (keep the lower-level theme),
merge_sibling, keep_separate.

Theme 1 (level {theme1.level}):
{json.dumps(theme_payload(theme1), indent=2)}

Theme 2 (level {theme2.level}):
{json.dumps(theme_payload(theme2), indent=2)}

Answer with:
{{"similarityScore": 0.0-1.0, "relationshipType": "...", "action": "...", "confidence": 0.0-1.0, "reasoning": "one sentence"}}"""


__all__ = ["MindmapPrompts", "theme_payload"]
