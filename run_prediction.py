import pandas as pd
import numpy as np
import os
import logging

from hmsc_latent import RandomLevel, predict_latent_factor, construct_knots

# Configure logging
logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(message)s')

def load_posterior(npz_path: str):
    """
    Loads posterior draws of latent factors saved by the model fitting run.

    The file must contain:
     - 'post_eta': (n_draws, n_units, n_factors) latent factors at the conditioned units
     - 'post_alpha': (n_draws, n_factors) range parameter indices (rows of alphapw)
     - 'units': (n_units,) unit labels, in the row order of post_eta
     - 'alphapw' (optional): (n_alpha, 2) range parameter grid

    Returns:
        dict: post_eta and post_alpha as lists (one entry per draw), units and alphapw.
    """
    results = np.load(npz_path, allow_pickle=True)
    post_eta = results['post_eta']
    post_alpha = results['post_alpha']
    if post_eta.shape[0] != post_alpha.shape[0]:
        raise ValueError(f"post_eta has {post_eta.shape[0]} draws but post_alpha has {post_alpha.shape[0]}")
    return {
        'post_eta': list(post_eta),
        'post_alpha': list(post_alpha.astype(int)),
        'units': results['units'].tolist(),
        'alphapw': results['alphapw'] if 'alphapw' in results.files else None,
    }

def run_prediction(coords_csv: str, posterior_npz: str, s_method: str = "NNGP", output_path: str = "latent_predictions.npz"):
    """
    Predicts latent factors at every site of a coordinate table that is not in the posterior.

    Args:
        coords_csv (str): CSV with a 'unit' column and one column per coordinate dimension.
        posterior_npz (str): Posterior draws, see load_posterior.
        s_method (str): 'Full', 'NNGP' or 'GPP'.
        output_path (str): Where to save the predicted draws.
    """
    # --- 1. Load coordinates and posterior draws ---
    logging.info(f"Loading coordinates from {coords_csv}...")
    try:
        coords = pd.read_csv(coords_csv).set_index('unit')
    except FileNotFoundError:
        logging.error(f"Coordinate file not found at {coords_csv}. Please update the path.")
        return

    logging.info(f"Loading posterior draws from {posterior_npz}...")
    posterior = load_posterior(posterior_npz)
    units = posterior['units']

    # --- 2. Set up the random level ---
    s_knot = construct_knots(coords) if s_method == "GPP" else None
    rL = RandomLevel(s_data=coords, s_method=s_method, n_neighbours=10, s_knot=s_knot,
                     alphapw=posterior['alphapw'])

    known = set(units)
    units_pred = [u for u in coords.index if u not in known]
    logging.info(f"  Conditioned units: {len(units)}")
    logging.info(f"  Units to predict: {len(units_pred)}")
    logging.info(f"  Posterior draws: {len(posterior['post_eta'])}")
    if len(units_pred) == 0:
        logging.warning("Every unit in the coordinate table is already in the posterior. Nothing to predict.")
        return

    # --- 3. Predict and save ---
    post_eta_pred = predict_latent_factor(
        units_pred, units, posterior['post_eta'], posterior['post_alpha'], rL,
        random_state=0, print_progress=True
    )
    save_predictions(post_eta_pred, output_path)

def save_predictions(post_eta_pred: list, output_path: str):
    """
    Saves predicted draws to a compressed .npz file.

    Args:
        post_eta_pred (list): One DataFrame per draw as returned by predict_latent_factor.
        output_path (str): The path to save the .npz file.
    """
    logging.info(f"Saving predicted latent factors to {output_path}...")
    np.savez_compressed(
        output_path,
        eta_pred=np.stack([eta.values for eta in post_eta_pred]),
        units=np.array(post_eta_pred[0].index.tolist(), dtype=object),
        factors=np.array(post_eta_pred[0].columns.tolist(), dtype=object),
    )
    logging.info(f"Predictions saved successfully to {os.path.abspath(output_path)}")

if __name__ == '__main__':
    COORDS_CSV_PATH = 'site_coordinates.csv'
    POSTERIOR_NPZ_PATH = 'posterior_latent_factors.npz'

    run_prediction(COORDS_CSV_PATH, POSTERIOR_NPZ_PATH)
