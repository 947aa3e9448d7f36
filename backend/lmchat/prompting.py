from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

from .classifier import Classification, ResearchMode
from .research import ResearchResult


class PromptTemplateError(RuntimeError):
    pass


_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Keep your responses concise and avoid repeating yourself."

SOCIAL_ANALYSIS_PROMPT = """You are an AI assistant performing a comprehensive social media analysis. You MUST structure your response exactly as follows:

## Basic Information
- Name/Entity: [Full name or entity name]
- Type: [Individual/Brand/Organization]
- Primary Focus: [Main area of activity/influence]

## Social Media Presence Overview
[Overall summary of digital footprint and influence]

## Platform-Specific Analysis

### Professional Networks (LinkedIn)
- Profile Overview
- Professional History
- Connections and Influence
- Content Focus
- Engagement Patterns

### Twitter/X
- Handle and Followers
- Post Frequency
- Content Themes
- Engagement Metrics
- Notable Interactions
- Hashtag Usage

### Instagram
- Account Type (Personal/Business)
- Follower Demographics
- Content Style
- Visual Themes
- Story/Reel Usage
- Engagement Patterns

### TikTok
- Account Focus
- Content Style
- Viral Content
- Hashtag Strategy
- Engagement Metrics

### YouTube
- Channel Overview
- Content Categories
- Subscriber Base
- Video Performance
- Engagement Style

### Facebook
- Page/Profile Type
- Content Strategy
- Community Engagement
- Event Participation
- Group Involvement

### Other Platforms
[Analysis of presence on Medium, Substack, GitHub, etc.]

## Content Analysis
- Primary Topics
- Content Style
- Posting Frequency
- Peak Activity Times
- Cross-Platform Strategy

## Engagement Metrics
- Follower Growth
- Engagement Rates
- Platform Performance
- Audience Demographics
- Peak Engagement Times

## Brand Voice & Messaging
- Communication Style
- Key Messages
- Consistency
- Evolution Over Time

## Notable Campaigns/Moments
[Significant social media activities or viral moments]

## Verification & Authenticity
- Verified Accounts
- Cross-Platform Consistency
- Potential Red Flags
- Information Reliability

## Recommendations
[Suggested areas for investigation or notable patterns to watch]

Important:
1. ALWAYS include all sections above
2. Provide specific metrics where available
3. Note platform-specific strengths/weaknesses
4. Include relevant handles and links
5. Highlight verified information
6. Note any data gaps or uncertainties"""

PERSON_ANALYSIS_PROMPT = """You are an AI assistant analyzing search results about a person. You MUST structure your response exactly as follows:

## Identity
- Full Name: [State the person's full name]
- Current Role/Occupation: [List current position(s)]

## Professional Background
[Summarize career history and achievements]

## Social Media Presence
[Detailed analysis of each platform found:

### LinkedIn
- Profile Overview
- Current Position
- Career History
- Notable Connections
- Content Focus

### Twitter/X
- Handle
- Follower Count
- Tweet Focus
- Notable Interactions
- Hashtag Usage

### Instagram
- Account Type
- Content Style
- Engagement Level
- Notable Posts
- Themes

### TikTok
- Content Style
- Following
- Viral Posts
- Key Topics

### Facebook
- Public Presence
- Community Engagement
- Notable Activities

### Other Platforms
(YouTube, Medium, Substack, GitHub, etc.)]

## Notable Information
[Key facts, achievements, or newsworthy items]

## Online Activity Patterns
- Posting Frequency
- Platform Preferences
- Content Themes
- Engagement Style
- Cross-Platform Presence

## Verification Status
[Indicate confidence level in the information:
- Which facts are verified across multiple sources
- Which information needs verification
- Any conflicting information found
- Account verification status on each platform]

Important:
1. ALWAYS include all sections above
2. Cite sources for key claims
3. Note any uncertainty
4. Include all social media handles/links found
5. Highlight verified accounts"""

WEB_ANALYSIS_PROMPT = """You are an AI assistant analyzing web search results. You MUST structure your response exactly as follows:

## Summary
[Provide a clear, concise overview of the key findings]

## Details
[List key information with direct quotes]

## Analysis
[Your interpretation of the findings]

## Gaps
[Note any missing information]

## Recommendations
[Suggest next steps]

Important:
1. ALWAYS include all sections above
2. Use markdown formatting
3. Include quotes from sources
4. Keep it clear and organized"""

RESEARCH_USER_TEMPLATE = """Analyze these search results for: "{{query}}"

{{context}}

YOU MUST include all sections as specified in the prompt above.
The Sources section will be added automatically."""

RESULT_DELIMITER = "\n\n---\n\n"
NO_CONTENT_PLACEHOLDER = "No additional content available"


@dataclass(frozen=True)
class ComposedPrompt:
    system_prompt: str
    user_message: str


def render_template(template: str, variables: dict[str, Any], required_placeholders: list[str] | None = None) -> str:
    required_placeholders = required_placeholders or []

    missing = [p for p in required_placeholders if f"{{{{{p}}}}}" not in template]
    if missing:
        raise PromptTemplateError(
            "Prompt template missing required placeholders: " + ", ".join(f"{{{{{m}}}}}" for m in missing)
        )

    # Single pass: placeholder text inside substituted values is not expanded.
    def sub(m: re.Match[str]) -> str:
        key = m.group(1)
        return str(variables[key]) if key in variables else m.group(0)

    return _PLACEHOLDER_RE.sub(sub, template)


def system_prompt_for(mode: ResearchMode) -> str:
    if mode is ResearchMode.NONE:
        return DEFAULT_SYSTEM_PROMPT
    if mode is ResearchMode.SOCIAL_ANALYSIS:
        return SOCIAL_ANALYSIS_PROMPT
    if mode is ResearchMode.PERSON_LOOKUP:
        return PERSON_ANALYSIS_PROMPT
    return WEB_ANALYSIS_PROMPT


def format_result(result: ResearchResult) -> str:
    return (
        f"Source: {result.title}\n"
        f"URL: {result.url}\n"
        f"Summary: {result.snippet}\n"
        f"Content: {result.scraped_content or NO_CONTENT_PLACEHOLDER}"
    )


def compose(classification: Classification, results: Sequence[ResearchResult]) -> ComposedPrompt:
    if classification.mode is ResearchMode.NONE:
        return ComposedPrompt(system_prompt=DEFAULT_SYSTEM_PROMPT, user_message=classification.cleaned_query)

    context = RESULT_DELIMITER.join(format_result(r) for r in results)
    user_message = render_template(
        RESEARCH_USER_TEMPLATE,
        variables={"query": classification.cleaned_query, "context": context},
        required_placeholders=["query", "context"],
    )
    return ComposedPrompt(system_prompt=system_prompt_for(classification.mode), user_message=user_message)


def build_messages(prompt: ComposedPrompt) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": prompt.system_prompt},
        {"role": "user", "content": prompt.user_message},
    ]
