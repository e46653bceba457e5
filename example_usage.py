import numpy as np
import pandas as pd
import logging

from hmsc_latent import RandomLevel, predict_latent_factor, construct_knots, default_alphapw, stack_draws
from hmsc_latent.utils import kernel, pairwise_distances

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

def run_example():
    print("Simulating latent factors...")
    # 1. Sites in a 10 x 10 square; the first 150 were sampled, the last 50 are new
    n_sites = 200
    n_old = 150
    n_factors = 2
    rng = np.random.RandomState(1)
    labels = [f"site{i:03d}" for i in range(n_sites)]
    coords = pd.DataFrame(rng.uniform(0, 10, size=(n_sites, 2)), index=labels, columns=['x', 'y'])
    coords.index.name = 'unit'

    # 2. True factors drawn from the exponential GP, one length scale per factor
    alphapw = default_alphapw(max_dist=15.0, alpha_n=15)
    true_alpha = np.array([3, 0])  # length scale 3.0 and the no-correlation sentinel
    D = pairwise_distances(coords.values)
    eta_true = np.column_stack([
        np.linalg.cholesky(kernel(D, alphapw[a, 0]) + 1e-10 * np.eye(n_sites)) @ rng.normal(size=n_sites)
        if alphapw[a, 0] > 0 else rng.normal(size=n_sites)
        for a in true_alpha
    ])

    # 3. Stand-in for MCMC output: noisy copies of the truth at the sampled sites
    n_draws = 50
    post_eta = [eta_true[:n_old] + 0.1 * rng.normal(size=(n_old, n_factors)) for _ in range(n_draws)]
    post_alpha = [true_alpha.copy() for _ in range(n_draws)]
    units, units_pred = labels[:n_old], labels[n_old:]

    # 4. Predict with each strategy and compare to the truth
    levels = {
        'Full': RandomLevel(s_data=coords, s_method='Full', alphapw=alphapw),
        'NNGP': RandomLevel(s_data=coords, s_method='NNGP', n_neighbours=10, alphapw=alphapw),
        'GPP': RandomLevel(s_data=coords, s_method='GPP', s_knot=construct_knots(coords, n_knots=6),
                           alphapw=alphapw),
    }
    truth = eta_true[n_old:, 0]
    print(f"RMSE of the posterior mean of factor 0 at {len(units_pred)} new sites:")
    for name, rL in levels.items():
        post_eta_pred = predict_latent_factor(units_pred, units, post_eta, post_alpha, rL, random_state=2)
        mean = stack_draws(post_eta_pred).mean(axis=0)[:, 0]
        print(f"  {name:<5}: {np.sqrt(np.mean((mean - truth)**2)):.4f}")

    mean_only = predict_latent_factor(units_pred, units, post_eta, post_alpha, levels['Full'], predict_mean=True)
    mean = stack_draws(mean_only).mean(axis=0)[:, 0]
    print(f"  mean : {np.sqrt(np.mean((mean - truth)**2)):.4f}")

    # 5. Save inputs in the layout expected by run_prediction.py
    coords.reset_index().to_csv('site_coordinates.csv', index=False)
    np.savez_compressed(
        'posterior_latent_factors.npz',
        post_eta=np.stack(post_eta), post_alpha=np.stack(post_alpha),
        units=np.array(units, dtype=object), alphapw=alphapw,
    )
    print("Saved site_coordinates.csv and posterior_latent_factors.npz")

if __name__ == "__main__":
    run_example()
