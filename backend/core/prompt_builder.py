#!/usr/bin/env python3
"""
提示词构建器
- 单图优化：默认提示词 + 设置项追加子句
- 队列处理：模板 / 工作室预设 / 项目自定义提示词
"""

from typing import Mapping, Optional

DEFAULT_PROMPT = "Enhance this jewelry image for professional e-commerce presentation."
QUEUE_DEFAULT_PROMPT = "Enhance this jewelry image with clean white background"

# 子句顺序固定，与 settings 的键顺序无关
ENHANCEMENT_CLAUSES = (
    ("enhance_quality", "increase image sharpness and clarity"),
    ("remove_background", "make background pure white"),
    ("enhance_lighting", "improve lighting to highlight jewelry details and sparkle"),
    ("enhance_colors", "enhance color vibrancy while maintaining natural appearance"),
)


def build_prompt(base: Optional[str] = None, settings: Optional[Mapping[str, bool]] = None) -> str:
    """
    构建优化提示词

    Args:
        base: 调用方提供的提示词，为空时使用默认提示词
        settings: enhance_quality / remove_background / enhance_lighting / enhance_colors

    Returns:
        "{base} {子句1}, {子句2}." 或原样返回 base
    """
    prompt = base if base and base.strip() else DEFAULT_PROMPT
    if not settings:
        return prompt

    enhancements = [clause for key, clause in ENHANCEMENT_CLAUSES if settings.get(key)]
    if not enhancements:
        return prompt
    return f"{prompt} {', '.join(enhancements)}."


# ==================== 模板提示词 ====================

def build_template_prompt(template: Optional[Mapping]) -> Optional[str]:
    """模板: base_prompt + Style/Background/Lighting"""
    if not template:
        return None
    parts = [template.get("base_prompt")]
    if template.get("style"):
        parts.append(f"Style: {template['style']}")
    if template.get("background"):
        parts.append(f"Background: {template['background']}")
    if template.get("lighting"):
        parts.append(f"Lighting: {template['lighting']}")
    prompt = ". ".join(p for p in parts if p)
    return prompt or None


# ==================== 工作室预设 ====================

LENS_MAP = {
    '50mm': '50mm lens for natural perspective',
    '85mm': '85mm portrait lens for flattering compression',
    '100mm': '100mm macro lens for extreme detail',
    '135mm': '135mm telephoto for beautiful bokeh',
}
APERTURE_MAP = {
    'f/1.4': 'wide open at f/1.4 for creamy bokeh',
    'f/2.8': 'f/2.8 for subject isolation',
    'f/8': 'f/8 for sharp detail throughout',
    'f/16': 'f/16 for maximum depth of field',
}
ANGLE_MAP = {
    'top-down': 'shot from directly above (flat lay)',
    '45deg': 'shot at 45 degree angle',
    'eye-level': 'eye-level perspective',
    'low-angle': 'shot from low angle looking up',
}
LIGHTING_STYLE_MAP = {
    'studio-3point': 'professional three-point studio lighting',
    'natural': 'soft natural window light',
    'dramatic': 'dramatic high-contrast lighting with deep shadows',
    'soft': 'soft diffused lighting for even illumination',
    'rim': 'rim lighting for edge definition',
    'split': 'split lighting for artistic effect',
}
LIGHTING_DIRECTION_MAP = {
    'top-left': 'light from upper left',
    'top': 'overhead lighting',
    'top-right': 'light from upper right',
    'left': 'side lighting from left',
    'center': 'front-facing light',
    'right': 'side lighting from right',
    'bottom-left': 'low light from left',
    'bottom': 'low accent lighting',
    'bottom-right': 'low light from right',
}
BACKGROUND_TYPE_MAP = {
    'white': 'clean pure white background',
    'gradient': 'subtle gradient background',
    'black': 'dramatic black background',
    'transparent': 'transparent background for compositing',
    'scene': 'lifestyle scene setting',
}
SURFACE_MAP = {
    'marble': 'on luxurious marble surface',
    'velvet': 'on rich velvet fabric',
    'wood': 'on natural wood surface',
    'mirror': 'on reflective mirror surface',
    'silk': 'on elegant silk fabric',
    'concrete': 'on modern concrete surface',
}
SHADOW_MAP = {
    'none': '',
    'soft': 'with soft natural shadow',
    'hard': 'with crisp defined shadow',
    'floating': 'floating with subtle shadow below',
}
METAL_MAP = {
    'gold': 'rich yellow gold with warm tones',
    'silver': 'brilliant silver with cool tones',
    'rose-gold': 'elegant rose gold with pink undertones',
    'platinum': 'lustrous platinum finish',
    'mixed': 'mixed metals beautifully combined',
}
FINISH_MAP = {
    'high-polish': 'highly polished mirror-like finish',
    'matte': 'sophisticated matte finish',
    'brushed': 'brushed texture finish',
    'hammered': 'artisanal hammered texture',
}
FRAMING_MAP = {
    'center': 'centered composition',
    'rule-of-thirds': 'composed using rule of thirds',
    'golden-ratio': 'golden ratio composition',
}
ASPECT_MAP = {
    '1:1': 'square format',
    '4:5': 'portrait format for Instagram',
    '16:9': 'widescreen format',
    '9:16': 'vertical story format',
    '3:4': 'classic portrait ratio',
    '4:3': 'classic landscape ratio',
}
QUALITY_BOOSTERS = '8K resolution, ultra high detail, commercial quality, ready for e-commerce'


def _num(preset: Mapping, key: str) -> Optional[float]:
    value = preset.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _above(preset: Mapping, key: str, threshold: float) -> bool:
    value = _num(preset, key)
    return value is not None and value > threshold


def _below(preset: Mapping, key: str, threshold: float) -> bool:
    value = _num(preset, key)
    return value is not None and value < threshold


def _join(parts) -> str:
    return ", ".join(p for p in parts if p)


def _text(preset: Mapping, key: str) -> str:
    return str(preset.get(key) or "")


def build_preset_prompt(preset: Optional[Mapping]) -> Optional[str]:
    """
    将工作室预设编译为摄影提示词

    各段（相机、灯光、背景、珠宝、构图、质量）以 ". " 连接，末尾加句号。
    """
    if not preset:
        return None

    parts = ['Professional jewelry product photography']

    # 相机
    lens = _text(preset, 'camera_lens')
    aperture = _text(preset, 'camera_aperture')
    angle = _text(preset, 'camera_angle')
    camera_parts = [
        LENS_MAP.get(lens, f"{lens} lens" if lens else ""),
        APERTURE_MAP.get(aperture, aperture),
        ANGLE_MAP.get(angle, angle),
    ]
    focus = preset.get('camera_focus')
    if focus == 'shallow-dof':
        camera_parts.append('shallow depth of field with artistic blur')
    elif focus == 'tilt-shift':
        camera_parts.append('tilt-shift effect for miniature look')
    parts.append(_join(camera_parts))

    # 灯光
    style = _text(preset, 'lighting_style')
    direction = _text(preset, 'lighting_direction')
    lighting_parts = [
        LIGHTING_STYLE_MAP.get(style, style),
        LIGHTING_DIRECTION_MAP.get(direction, direction),
    ]
    if _above(preset, "lighting_key_intensity", 80):
        lighting_parts.append('bright key light')
    elif _below(preset, "lighting_key_intensity", 40):
        lighting_parts.append('subtle key light')
    if _above(preset, "lighting_rim_intensity", 60):
        lighting_parts.append('strong rim lighting for edge separation')
    parts.append(_join(lighting_parts))

    # 背景
    background_type = _text(preset, 'background_type')
    background_parts = [BACKGROUND_TYPE_MAP.get(background_type, background_type)]
    surface = preset.get('background_surface')
    if surface != 'none' and surface in SURFACE_MAP:
        background_parts.append(SURFACE_MAP[surface])
    shadow = SHADOW_MAP.get(preset.get('background_shadow'))
    if shadow:
        background_parts.append(shadow)
    if _above(preset, "background_reflection", 30):
        background_parts.append('with mirror-like reflection')
    elif _above(preset, "background_reflection", 0):
        background_parts.append('with subtle reflection')
    parts.append(_join(background_parts))

    # 珠宝
    jewelry_parts = []
    metal = preset.get('jewelry_metal')
    if metal != 'auto' and metal in METAL_MAP:
        jewelry_parts.append(METAL_MAP[metal])
    finish = _text(preset, 'jewelry_finish')
    jewelry_parts.append(FINISH_MAP.get(finish, finish))
    if _above(preset, "jewelry_sparkle", 80):
        jewelry_parts.append('brilliant sparkling highlights and light play')
    elif _above(preset, "jewelry_sparkle", 50):
        jewelry_parts.append('elegant sparkle and shine')
    if _above(preset, "jewelry_color_pop", 70):
        jewelry_parts.append('vibrant enhanced colors')
    if _above(preset, "jewelry_detail", 80):
        jewelry_parts.append('extreme detail showing every facet and texture')
    elif _above(preset, "jewelry_detail", 50):
        jewelry_parts.append('sharp detail throughout')
    parts.append(_join(jewelry_parts))

    # 构图
    framing = _text(preset, 'composition_framing')
    aspect = _text(preset, 'composition_aspect_ratio')
    composition_parts = [
        FRAMING_MAP.get(framing, framing),
        ASPECT_MAP.get(aspect, aspect),
    ]
    if _above(preset, "composition_padding", 30):
        composition_parts.append('generous negative space around subject')
    parts.append(_join(composition_parts))

    parts.append(QUALITY_BOOSTERS)

    return '. '.join(p for p in parts if p) + '.'


def resolve_project_prompt(project) -> str:
    """队列项提示词优先级：模板 > 工作室预设 > 项目自定义 > 默认"""
    if project is None:
        return QUEUE_DEFAULT_PROMPT
    return (
        build_template_prompt(project.prompt_template)
        or build_preset_prompt(project.studio_preset)
        or (project.custom_prompt or "").strip()
        or QUEUE_DEFAULT_PROMPT
    )
