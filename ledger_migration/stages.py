"""Default stage plan for the storytelling platform's Airtable base."""

import copy
from typing import Any, Dict, List

from .models.schema import (
    AttachmentMapping,
    EntityType,
    FieldMapping,
    LinkDefinition,
    RelationMapping,
    StageDefinition,
    TransformType,
)

STORY_STATUS_MAP = {
    "published": "published",
    "live": "published",
    "draft": "draft",
    "review": "review",
    "in review": "review",
}

PERMISSION_MAP = {
    "public": "public",
    "community": "community",
    "private": "private",
}


DEFAULT_STAGES: List[StageDefinition] = [
    StageDefinition(
        entity_type=EntityType.STORYTELLER,
        source_table="Storytellers",
        display_name_field="Name",
        field_mappings=[
            FieldMapping("Name", "full_name", TransformType.STRIP_TEXT),
            FieldMapping("Role", "role", TransformType.STRIP_TEXT),
            FieldMapping("Summary (from Media)", "bio", TransformType.STRIP_TEXT, {"min_length": 10}),
            FieldMapping("Location", "location", TransformType.FIRST),
            FieldMapping("Project", "project", TransformType.FIRST),
            FieldMapping("Created", "created_at", TransformType.ISO_DATETIME),
            FieldMapping(None, "consent_given", TransformType.CONSTANT, {"value": False}),
        ],
        attachments=[
            AttachmentMapping("File Profile Image", "profile_image_url"),
        ],
    ),
    StageDefinition(
        entity_type=EntityType.TRANSCRIPT,
        source_table="Media",
        filter_formula="NOT({Transcript} = '')",
        display_name_field="File Name",
        field_mappings=[
            FieldMapping("File Name", "title", TransformType.TRUNCATE, {"max_length": 500}),
            FieldMapping("Transcript", "transcript_content", TransformType.STRIP_TEXT, {"min_length": 10}),
        ],
        relations=[
            RelationMapping("Storytellers", "storyteller_id", EntityType.STORYTELLER, required=True),
        ],
    ),
    StageDefinition(
        entity_type=EntityType.MEDIA,
        source_table="Media",
        display_name_field="File Name",
        field_mappings=[
            FieldMapping("File Name", "title", TransformType.TRUNCATE, {"max_length": 500}),
            FieldMapping("Type", "media_type", TransformType.ENUM_MAP, {
                "mapping": {"video": "video", "audio": "audio", "image": "image", "photo": "image"},
                "default": "video",
            }),
            FieldMapping("Description", "description", TransformType.STRIP_TEXT),
        ],
        relations=[
            RelationMapping("Storytellers", "storyteller_id", EntityType.STORYTELLER),
        ],
        attachments=[
            AttachmentMapping("File", "file_url"),
        ],
    ),
    StageDefinition(
        entity_type=EntityType.STORY,
        source_table="Stories",
        display_name_field="Title",
        field_mappings=[
            FieldMapping("Title", "title", TransformType.TRUNCATE, {"max_length": 500}),
            FieldMapping("Story Transcript", "story_content", TransformType.STRIP_TEXT),
            FieldMapping("Status", "status", TransformType.ENUM_MAP, {
                "mapping": STORY_STATUS_MAP,
                "default": "draft",
            }),
            FieldMapping("Permissions", "privacy_level", TransformType.ENUM_MAP, {
                "mapping": PERMISSION_MAP,
                "default": "private",
            }),
            FieldMapping("Video Story Link", "video_url", TransformType.STRIP_TEXT),
        ],
        relations=[
            RelationMapping("Storytellers", "storyteller_id", EntityType.STORYTELLER, required=True),
        ],
        attachments=[
            AttachmentMapping("Story Image", "featured_image_url"),
        ],
    ),
    StageDefinition(
        entity_type=EntityType.QUOTE,
        source_table="Quotes",
        display_name_field="Quote Text",
        field_mappings=[
            FieldMapping("Quote Text", "quote_text", TransformType.STRIP_TEXT, {"min_length": 3}),
            FieldMapping("Context", "context", TransformType.STRIP_TEXT),
            FieldMapping("Emotion", "emotional_tone", TransformType.FIRST),
            FieldMapping("Impact Score", "significance_score", TransformType.INTEGER),
        ],
        relations=[
            RelationMapping("Media", "transcript_id", EntityType.TRANSCRIPT),
        ],
    ),
    StageDefinition(
        entity_type=EntityType.THEME,
        source_table="Themes",
        display_name_field="Name",
        claim_legacy=True,
        field_mappings=[
            FieldMapping("Name", "name", TransformType.STRIP_TEXT),
        ],
    ),
]

DEFAULT_LINKS: List[LinkDefinition] = [
    LinkDefinition(EntityType.QUOTE, "Themes", EntityType.THEME, "theme_ids"),
    LinkDefinition(EntityType.STORY, "Themes", EntityType.THEME, "theme_ids"),
]


def build_stages(overrides: Dict[str, Dict[str, Any]]) -> List[StageDefinition]:
    """Default stages with per-stage overrides from the migration config applied."""
    stages = copy.deepcopy(DEFAULT_STAGES)
    for stage in stages:
        stage.apply_overrides(overrides.get(stage.name, {}))
    return stages


def build_links() -> List[LinkDefinition]:
    return copy.deepcopy(DEFAULT_LINKS)
