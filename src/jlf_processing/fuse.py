"""
Joint label fusion of registered atlases

This file fuses atlases that are already registered and resampled to the
target image into a consensus segmentation and a joint intensity estimate.
"""

import warnings
warnings.filterwarnings("ignore", category=UserWarning)
warnings.simplefilter("ignore", category=FutureWarning)

from pathlib import Path
from typing import List, Optional

import typer

from jlf_processing.dataio.metadata import (
    parse_label_exclusion,
    parse_radius,
    write_fusion_metadata,
)
from jlf_processing.dataio.ngffzarr import write_maps_via_tensorstore
from jlf_processing.dataio.volumes import read_volume, read_volumes, check_same_grid, write_volume
from jlf_processing.imageprocessing.jointfusion import JointLabelFusion

app = typer.Typer()
app.pretty_exceptions_enable = False


@app.command()
def fuse(
    target: List[Path] = typer.Option(
        ..., "--target", "-t", help="Target image, repeat once per modality."
    ),
    atlas: List[str] = typer.Option(
        ..., "--atlas", "-g", help="Comma separated modality images of one atlas, repeat per atlas."
    ),
    output_prefix: Path = typer.Option(..., "--output-prefix", "-o"),
    label: Optional[List[Path]] = typer.Option(
        None, "--label", "-l", help="Atlas segmentation, repeat per atlas in atlas order."
    ),
    mask: Optional[Path] = typer.Option(None, "--mask", "-x"),
    mask_label: int = typer.Option(1, "--mask-label"),
    exclusion: Optional[List[str]] = typer.Option(
        None, "--exclusion", "-e", help="LABEL:path, voxels where LABEL may not win."
    ),
    patch_radius: str = typer.Option("2", "--patch-radius", "-p", help="e.g. 2 or 2x2x1 (z, y, x)."),
    search_radius: str = typer.Option("3", "--search-radius", "-s", help="e.g. 3 or 3x3x1 (z, y, x)."),
    alpha: float = typer.Option(0.1, "--alpha", "-a"),
    beta: float = typer.Option(2.0, "--beta", "-b"),
    pearson: bool = typer.Option(False, "--pearson", help="Match patches with Pearson correlation."),
    constrain_nonnegative: bool = typer.Option(False, "--constrain-nonnegative"),
    retain_posteriors: bool = typer.Option(False, "--retain-posteriors"),
    retain_voting_weights: bool = typer.Option(False, "--retain-voting-weights"),
    zarr_output: Optional[Path] = typer.Option(
        None, "--zarr-output", help="Also write retained maps as one zarr3 array."
    ),
    max_workers: int = typer.Option(8, "--max-workers"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Fuse registered atlases onto a target image.

    Usage: `jlf-fuse -t target.nii.gz -g atlas1.nii.gz -l labels1.nii.gz
    -g atlas2.nii.gz -l labels2.nii.gz -o out/jlf_`

    Output will be in `out/jlf_Labels.nii.gz`, `out/jlf_Intensity0.nii.gz`,
    ... and `out/jlf_fusion.json`.
    """

    try:
        patch = parse_radius(patch_radius)
        search = parse_radius(search_radius)
        exclusions = [parse_label_exclusion(value) for value in (exclusion or [])]
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    target_images, reference = read_volumes(target)

    atlas_images = []
    for atlas_spec in atlas:
        paths = [Path(p.strip()) for p in atlas_spec.split(",") if p.strip()]
        if not paths:
            raise typer.BadParameter(f"Empty atlas specification '{atlas_spec}'.")
        modalities = []
        for path in paths:
            data, image = read_volume(path)
            check_same_grid(reference, image, path)
            modalities.append(data)
        atlas_images.append(modalities)

    segmentations = []
    for path in label or []:
        data, image = read_volume(path)
        check_same_grid(reference, image, path)
        segmentations.append(data)

    mask_data = None
    if mask is not None:
        mask_data, mask_image = read_volume(mask)
        check_same_grid(reference, mask_image, mask)

    label_exclusions = {}
    for label_value, path in exclusions:
        data, image = read_volume(path)
        check_same_grid(reference, image, path)
        label_exclusions[label_value] = data

    fuser = JointLabelFusion(
        target_images=target_images,
        atlas_images=atlas_images,
        atlas_segmentations=segmentations or None,
        search_radius=search,
        patch_radius=patch,
        alpha=alpha,
        beta=beta,
        use_pearson_correlation=pearson,
        constrain_nonnegative=constrain_nonnegative,
        mask=mask_data,
        mask_label=mask_label,
        label_exclusions=label_exclusions,
        retain_label_posteriors=retain_posteriors,
        retain_atlas_voting_weights=retain_voting_weights,
        max_workers=max_workers,
        debug=debug,
    )
    result = fuser.run()

    prefix = str(output_prefix)
    outputs = {}
    zarr_maps = []

    if result.labels.size > 0:
        outputs["labels"] = write_volume(result.label_image, reference, prefix + "Labels.nii.gz")

    for idx, intensity in enumerate(result.joint_intensity):
        outputs[f"intensity{idx}"] = write_volume(
            intensity, reference, prefix + f"Intensity{idx}.nii.gz"
        )

    if result.label_posteriors is not None:
        for label_value, posterior in result.label_posteriors.items():
            outputs[f"posterior{label_value}"] = write_volume(
                posterior.astype("float32"), reference, prefix + f"Posteriors{label_value}.nii.gz"
            )
            zarr_maps.append(posterior)

    if result.atlas_voting_weights is not None:
        for idx, weights in enumerate(result.atlas_voting_weights):
            outputs[f"voting_weight{idx}"] = write_volume(
                weights.astype("float32"), reference, prefix + f"VotingWeight{idx}.nii.gz"
            )
            zarr_maps.append(weights)

    if zarr_output is not None:
        if zarr_maps:
            write_maps_via_tensorstore(zarr_output, zarr_maps)
            outputs["zarr"] = zarr_output
        else:
            typer.echo("No retained maps, skipping zarr output.", err=True)

    parameters = {
        "targets": list(target),
        "atlases": list(atlas),
        "labels": list(label or []),
        "mask": mask,
        "mask_label": mask_label,
        "exclusions": {str(k): v for k, v in exclusions},
        "patch_radius": patch,
        "search_radius": search,
        "alpha": alpha,
        "beta": beta,
        "pearson": pearson,
        "constrain_nonnegative": constrain_nonnegative,
    }
    outputs["metadata"] = write_fusion_metadata(
        prefix + "fusion.json", parameters, result.labels.tolist(), outputs
    )

    for name, path in outputs.items():
        typer.echo(f"{name}: {path}")


# entry for point for CLI
def main():
    app()

if __name__ == "__main__":
    main()
