import seaborn as sns

EFFECT_LABELS = {
    "ROM": "Log response ratio",
    "SMD": "Hedges' g",
}

MODERATOR_LABELS = {
    "sei": "Standard error",
    "vi": "Sampling variance",
    "year_c": "Publication year (centred)",
    "latitude_c": "Latitude (centred)",
    "longitude_c": "Longitude (centred)",
}

# colorblind-safe palette for categorical point colours
STUDY_PALETTE = "colorblind"
LINE_COLOURS = sns.color_palette("colorblind", n_colors=5)
MODEL_COLOUR = LINE_COLOURS[0]
POOLED_COLOUR = LINE_COLOURS[3]


def get_study_colours(keys) -> dict:
    """Map each unique key (e.g. study_id) to a colour, cycling the palette if needed."""
    unique_keys = list(dict.fromkeys(keys))
    palette = sns.color_palette(STUDY_PALETTE, n_colors=max(len(unique_keys), 1))
    return {key: palette[i % len(palette)] for i, key in enumerate(unique_keys)}
