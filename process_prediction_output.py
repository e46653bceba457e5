import pandas as pd
import numpy as np
import logging
import os

from hmsc_latent import summarize_draws

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

def load_predictions(npz_path: str):
    """
    Loads predicted draws saved by run_prediction.py back into one DataFrame per draw.

    Args:
        npz_path (str): Path of the .npz file written by save_predictions.

    Returns:
        list: One (n_units, n_factors) DataFrame per posterior draw.
    """
    results = np.load(npz_path, allow_pickle=True)
    index = pd.Index(results['units'].tolist())
    columns = results['factors'].tolist()
    return [pd.DataFrame(eta, index=index, columns=columns) for eta in results['eta_pred']]

def main():
    """
    Summarizes predicted latent factors per unit and factor and writes them to CSV.
    """
    predictions_path = 'latent_predictions.npz'
    summary_path = 'latent_prediction_summary.csv'

    if not os.path.exists(predictions_path):
        logging.error(f"Predictions not found at '{predictions_path}'. Please run run_prediction.py first.")
        return

    logging.info(f"Loading predictions from {predictions_path}...")
    post_eta_pred = load_predictions(predictions_path)
    logging.info(f"Loaded {len(post_eta_pred)} draws for {post_eta_pred[0].shape[0]} units")

    summary = summarize_draws(post_eta_pred)
    summary.to_csv(summary_path, index=False)
    logging.info(f"Summary saved to {summary_path}")

    # Units whose 95% interval is most narrow are the ones best informed by nearby sites
    summary['width'] = summary['q0.975'] - summary['q0.025']
    for factor, group in summary.groupby('factor'):
        best = group.nsmallest(5, 'width')
        logging.info(f"--- Factor {factor}: narrowest 95% intervals ---")
        for _, row in best.iterrows():
            logging.info(
                f"  {str(row['unit']):<12}: Mean={row['mean']:8.4f}, "
                f"95% CI=({row['q0.025']:8.4f}, {row['q0.975']:8.4f})"
            )

if __name__ == '__main__':
    main()
