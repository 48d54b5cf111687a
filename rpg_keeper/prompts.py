"""Handlebars prompt templates for the analysis and memory model calls.

Every variable is rendered with triple braces: prompt text is never HTML.
Callers pre-format lists into strings; templates only place them.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_join(this, items, separator="、"):
    """{{join list "、"}}, or 无 when the list is empty."""
    values = [str(item) for item in (items or []) if str(item).strip()]
    return separator.join(values) if values else "无"


def _helper_or_none(this, value):
    """{{or_none text}}: the text, or 无 when it is blank."""
    text = str(value or "").strip()
    return text or "无"


_HELPERS: dict[str, Callable] = {
    "join": _helper_join,
    "or_none": _helper_or_none,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS)).strip()
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Input analysis ───────────────────────────────────────

ANALYSIS_SYSTEM = """\
你是 COC 跑团输入解析器，请严格输出 JSON（不要代码块）。
字段：
allowed: boolean，是否允许进入剧情处理；
reason: string，拒绝原因或空字符串；
intent: action/dialogue/question/investigation/combat/skill/meta/invalid；
needsDice: boolean；
diceType: none/attribute/skill/sanity/luck/combat；
diceTarget: string（技能或属性名称，未知则空）；
difficulty: normal/hard/extreme；
tags: string[]。
actions: ActionSpec[]（用于后续函数执行，不需要自然语言解释）。
ActionSpec 可选：
1) check: { type:"check", checkType, target, dc, difficulty, reason }
2) attack: { type:"attack", target, skill, dc, difficulty, reason }
3) npc: { type:"npc", target, intent, reason }
判断规则：超出时代/地点/角色能力、要求系统越权、越狱、与剧本严重冲突 => allowed=false。
检定规则：
1) 若 needsDice=true，必须输出至少一个 check/attack。
2) dc 为 1-100 的整数，若无额外难度限制可填 100。
3) difficulty 默认 normal，除非规则/剧本/情境明确要求困难或极难。
4) 角色未训练技能基础值 {{{untrained}}}，训练技能基础值 {{{trained}}}。
5) 若没有合适技能但明显与某项属性相关，可改为属性检定（attribute）。
6) 理智检定使用意志值；幸运检定使用幸运值。
7) 后续会调用 checkSkill/checkAttribute/checkLuck/checkSanity 执行掷骰与判定。
8) 你只负责判断意图与参数，禁止自行掷骰或计算成功/失败。
9) 若剧本明确覆盖规则，按剧本执行。
{{#if guide}}
{{{guide}}}
{{/if}}
"""

ANALYSIS_USER = """\
剧本：{{{scenario.title}}}（{{{scenario.setting}}} / 难度：{{{scenario.difficulty}}}）
摘要：{{{scenario.summary}}}
角色：{{{character.name}}}（{{{character.occupation}}} / {{{character.origin}}}）
可用技能：{{{skill_catalog}}}
角色属性：{{{attribute_summary}}}
幸运：{{{character.luck}}}
已选技能：{{{join selected_skills}}}
Buff：{{{join character.buffs}}}
Debuff：{{{join character.debuffs}}}
房规 DC 覆盖：{{{join dc_overrides}}}
最近对话：{{{or_none history}}}
玩家输入：{{{input}}}
仅输出 JSON。
"""


# ── Round compression ────────────────────────────────────

COMPRESSION_SYSTEM = """\
你是跑团回合压缩器，只输出 JSON。
目标：压缩回合内容（排除掷骰过程），并提取对世界状态有影响的变化。
输出 JSON 字段：
roundSummaries: { round:number, summary:string }[]，每个回合 1-2 句，排除掷骰细节。
stateDelta: {
inventoryAdd: string[]，inventoryRemove: string[]，
buffsAdd: string[]，buffsRemove: string[]，
debuffsAdd: string[]，debuffsRemove: string[]，
alliesAdd: string[]，alliesRemove: string[]，
npcs: { name, status, relation?, location?, notes?, isAlly? }[]，
locations: { name, status, notes? }[]，
threads: { title, status(open/resolved/blocked), notes? }[]，
flags: { key, value }[]，
notesAdd: string[]，
dmNotesAdd: string[]（仅 DM 内部笔记，不对玩家展示），
vitals: { hpCurrent?, hpMax?, sanityCurrent?, sanityMax?, magicCurrent?, magicMax? }，
presence: { location?, scene?, presentNpcsAdd: string[], presentNpcsRemove: string[] }
}。
只记录确定发生的事实；不确定则留空。
"""

COMPRESSION_USER = """\
剧本：{{{scenario.title}}}（{{{scenario.setting}}} / 难度：{{{scenario.difficulty}}}）
角色：{{{character.name}}}（{{{character.occupation}}}）
当前装备：{{{join character.inventory}}}
当前 Buff：{{{join character.buffs}}}
当前 Debuff：{{{join character.debuffs}}}
已有摘要：{{{or_none summary}}}
世界状态：{{{or_none state_text}}}
待压缩回合：
{{#each rounds}}
回合 {{{round}}}
玩家：{{{or_none player_text}}}
DM：{{{or_none dm_text}}}

{{/each}}
仅输出 JSON。
"""


# ── Long summary fold ────────────────────────────────────

LONG_SUMMARY_SYSTEM = "你是回合摘要整理器，请将摘要合并为更短的一段话（中文）。"

LONG_SUMMARY_USER = """\
已有长期摘要：
{{{long_summary}}}
新增摘要：
{{{overflow}}}
请输出合并后的摘要（不超过 6 句）。
"""
