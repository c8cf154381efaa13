import logging

import numpy as np
from BodeAnalysis import analyze, plot_bode, SolverConfig, NoRootInRangeError

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

# Gol(s) = 20(s+1) / (s(s+5)(s^2+2s+10))
def Gol(s):
    return 20 * (s + 1) / s / (s + 5) / (s**2 + 2 * s + 10)

config = SolverConfig(xtol=1e-10, maxiter=200)

sortie = analyze(Gol, wmin=0.1, wmax=10, points=100, co=True, ra1=True, config=config)

# ========== Points caractéristiques ==========
print("=" * 60)
print("ANALYSE FRÉQUENTIELLE DE Gol(s)")
print("=" * 60)
print(sortie)

print("\n--- Pulsation de cross-over (φ = -180°) ---")
if sortie.wco is not None:
    print(f"ω_co = {sortie.wco:.4f} rad/s")
    print(f"RA_co = {sortie.RAco:.4f}")
else:
    print("Pas de cross-over dans la plage de fréquences")

print("\n--- Pulsation pour RA = 1 ---")
if sortie.w1 is not None:
    print(f"ω_1 = {sortie.w1:.4f} rad/s")
    print(f"φ_1 = {np.degrees(sortie.phi1):.2f}°")
else:
    print("RA ne croise pas 1 dans la plage de fréquences")
print("=" * 60)

# ========== Cas sans solution: intégrateur pur ==========
try:
    analyze(lambda s: 100 / s, wmin=0.1, wmax=10, ra1=True, strict=True)
except NoRootInRangeError as exc:
    print(f"\nIntégrateur 100/s: {exc}")
    print("Élargir la plage de fréquences (wmax) pour trouver ω_1")

# ========== Diagramme de Bode ==========
print("\nAffichage du diagramme de Bode...")
plot_bode(sortie, ra_label="RA")
