"""CosmicSplitter agent: splits functional requirements into COSMIC data movements."""

from __future__ import annotations

from ..models import AgentProfile

SYSTEM_PROMPT = """\
你是一名COSMIC功能规模度量专家。请把需求文档中的功能过程按COSMIC规则拆分为数据移动，\
功能过程名称采用"动词+业务对象"的形式，内容真实、具体、可落地。

## 数据移动类型
- E (Entry)：输入，功能用户触发请求
- R (Read)：从持久存储读取数据
- W (Write)：向持久存储写入数据
- X (eXit)：向功能用户输出结果

## 拆分规则
1. 每个功能过程拆分为3-5个子过程，顺序为 E → R/W → X，以E开头、以X结尾，中间至少一个R或W
2. 功能过程名称需同时包含业务目标和业务对象，例如"复核告警并派单"
3. 每个子过程都要填写数据组和数据属性，数据组名称中不要使用连字符"-"
4. 数据属性至少3个字段，同一功能过程内不同子过程的数据属性不能完全相同
5. 可能重复时，从子过程描述中提炼2-3个中文关键词融入数据组/数据属性，不要简单追加序号

## 功能用户写法
- 用户触发：发起者：用户 接收者：用户
- 时钟触发：发起者：定时触发器 接收者：业务平台
- 接口触发：发起者：其他平台 接收者：业务平台

## 输出格式（列顺序固定）
|功能用户|触发事件|功能过程|子过程描述|数据移动类型|数据组|数据属性|
|:---|:---|:---|:---|:---|:---|:---|
|发起者：用户 接收者：用户|用户触发|复核故障工单|提交复核请求|E|故障复核触发参数|工单编号、复核级别、触发时间|
||||读取待审工单|R|故障复核待审工单表|工单ID、受理方、紧急度、建单时间|
||||写入复核结果|W|故障复核结果表|工单ID、复核人、复核结论、处理建议|
||||返回复核结果|X|故障复核反馈数据|工单ID、复核状态、派单结论、反馈时间|

同一功能过程的后续子过程行，前三列留空即可。尽可能多地识别文档中的功能过程。
"""

CHAT_PROFILE = AgentProfile(
    name="CosmicSplitter",
    role="splitter",
    system_message=SYSTEM_PROMPT,
    temperature=0.7,
    max_tokens=8000,
)

DONE_MARKERS = ("[ALL_DONE]", "已完成", "全部拆分")
MAX_LISTED_FUNCTIONS = 20

_ROW_RULES = """\
【必须遵守】
1. 每个功能过程拆分为3-5个子过程，不能只有1-2个
2. 每个功能过程包含完整的数据移动序列：E → R/W → X
3. 示例：一个功能过程有4行（E+R+W+X）或5行（E+R+R+W+X）"""


def build_document_message(document: str, *, table_hint: bool = True) -> str:
    """First user message of a chat session that carries the source document."""
    tail = "请根据上述内容进行Cosmic拆分，生成标准的Markdown表格。" if table_hint else "请根据上述内容进行Cosmic拆分。"
    return f"以下是需要进行Cosmic拆分的功能过程文档内容：\n\n{document}\n\n{tail}"


def build_round_prompt(
    document: str,
    completed: list[str],
    round_num: int,
    target: int,
) -> str:
    """User prompt for one incremental-analysis round.

    Round 1 asks for a full split of at least *target* processes; later rounds
    list what is already done and ask only for the remainder.
    """
    if round_num <= 1:
        return (
            f"以下是功能文档内容：\n\n{document}\n\n"
            "请对文档中的功能进行COSMIC拆分，输出Markdown表格。\n\n"
            f"{_ROW_RULES}\n"
            f"4. 尽可能多地识别功能过程，至少识别 {target} 个功能过程\n"
            "5. 严格按照表格格式输出，每个功能过程占4-5行"
        )

    listed = "、".join(completed[:MAX_LISTED_FUNCTIONS])
    if len(completed) > MAX_LISTED_FUNCTIONS:
        listed += "..."
    return (
        f"以下是功能文档内容：\n\n{document}\n\n"
        "继续分析文档中尚未拆分的功能过程。\n\n"
        f"已完成的功能过程（{len(completed)}个）：\n{listed}\n\n"
        f"目标是最终至少覆盖 {target} 个功能过程。\n\n"
        f"{_ROW_RULES}\n\n"
        "请继续拆分文档中【其他尚未处理的功能】，输出Markdown表格格式。\n"
        '如果所有功能都已拆分完成，请回复"[ALL_DONE]"。'
    )


def is_done(reply: str) -> bool:
    """Whether the reply signals that every function has been split."""
    return any(marker in reply for marker in DONE_MARKERS)


def unique_in_order(names: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        if name:
            seen.setdefault(name, None)
    return list(seen)
