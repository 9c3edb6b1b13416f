"""
Atomic X-ray scattering factors for elements H (Z = 1) through Cf (Z = 98).

Cromer-Mann 4-Gaussian parameterisation
    f(s) = sum_i a_i * exp(-b_i * s^2) + c      where s = sin(theta)/lambda [A^-1]

The fit is only valid for s <= 2 A^-1; larger values are evaluated but logged.
"""

import logging
from collections import namedtuple
from types import MappingProxyType

import numpy as np

from diffraction_errors import UnsupportedElementError

logger = logging.getLogger(__name__)

ScatteringCoefficients = namedtuple('ScatteringCoefficients', ['a', 'b', 'c'])

MAX_VALID_S = 2.0

ELEMENT_SYMBOLS = (
    'H', 'He', 'Li', 'Be', 'B', 'C', 'N', 'O', 'F', 'Ne',
    'Na', 'Mg', 'Al', 'Si', 'P', 'S', 'Cl', 'Ar', 'K', 'Ca',
    'Sc', 'Ti', 'V', 'Cr', 'Mn', 'Fe', 'Co', 'Ni', 'Cu', 'Zn',
    'Ga', 'Ge', 'As', 'Se', 'Br', 'Kr', 'Rb', 'Sr', 'Y', 'Zr',
    'Nb', 'Mo', 'Tc', 'Ru', 'Rh', 'Pd', 'Ag', 'Cd', 'In', 'Sn',
    'Sb', 'Te', 'I', 'Xe', 'Cs', 'Ba', 'La', 'Ce', 'Pr', 'Nd',
    'Pm', 'Sm', 'Eu', 'Gd', 'Tb', 'Dy', 'Ho', 'Er', 'Tm', 'Yb',
    'Lu', 'Hf', 'Ta', 'W', 'Re', 'Os', 'Ir', 'Pt', 'Au', 'Hg',
    'Tl', 'Pb', 'Bi', 'Po', 'At', 'Rn', 'Fr', 'Ra', 'Ac', 'Th',
    'Pa', 'U', 'Np', 'Pu', 'Am', 'Cm', 'Bk', 'Cf',
)

_SYMBOL_TO_Z = {symbol: z for z, symbol in enumerate(ELEMENT_SYMBOLS, start=1)}

# ─── Coefficient table (International Tables Vol. C, Table 6.1.1.4) ──────────

_TABLE = {
    #     a1          a2          a3          a4            b1           b2           b3           b4          c
     1: ((  0.489918,   0.262003,   0.196767,   0.049879), (  20.659300,    7.740390,   49.551899,    2.201590),   0.001305),
     2: ((  0.873400,   0.630900,   0.311200,   0.178000), (   9.103700,    3.356800,   22.927601,    0.982100),   0.006400),
     3: ((  1.128200,   0.750800,   0.617500,   0.465300), (   3.954600,    1.052400,   85.390503,  168.261002),   0.037700),
     4: ((  1.591900,   1.127800,   0.539100,   0.702900), (  43.642700,    1.862300,  103.483002,    0.542000),   0.038500),
     5: ((  2.054500,   1.332600,   1.097900,   0.706800), (  23.218500,    1.021000,   60.349800,    0.140300),  -0.193200),
     6: ((  2.310000,   1.020000,   1.588600,   0.865000), (  20.843901,   10.207500,    0.568700,   51.651199),   0.215600),
     7: (( 12.212600,   3.132200,   2.012500,   1.166300), (   0.005700,    9.893300,   28.997499,    0.582600), -11.529000),
     8: ((  3.048500,   2.286800,   1.546300,   0.867000), (  13.277100,    5.701100,    0.323900,   32.908901),   0.250800),
     9: ((  3.539200,   2.641200,   1.517000,   1.024300), (  10.282500,    4.294400,    0.261500,   26.147600),   0.277600),
    10: ((  3.955300,   3.112500,   1.454600,   1.125100), (   8.404200,    3.426200,    0.230600,   21.718399),   0.351500),
    11: ((  4.762600,   3.173600,   1.267400,   1.112800), (   3.285000,    8.842200,    0.313600,  129.423996),   0.676000),
    12: ((  5.420400,   2.173500,   1.226900,   2.307300), (   2.827500,   79.261101,    0.380800,    7.193700),   0.858400),
    13: ((  6.420200,   1.900200,   1.593600,   1.964600), (   3.038700,    0.742600,   31.547199,   85.088600),   1.115100),
    14: ((  6.291500,   3.035300,   1.989100,   1.541000), (   2.438600,   32.333698,    0.678500,   81.693703),   1.140700),
    15: ((  6.434500,   4.179100,   1.780000,   1.490800), (   1.906700,   27.157000,    0.526000,   68.164497),   1.114900),
    16: ((  6.905300,   5.203400,   1.437900,   1.586300), (   1.467900,   22.215099,    0.253600,   56.172001),   0.866900),
    17: (( 11.460400,   7.196400,   6.255600,   1.645500), (   0.010400,    1.166200,   18.519400,   47.778400),  -9.557400),
    18: ((  7.484500,   6.772300,   0.653900,   1.644200), (   0.907200,   14.840700,   43.898300,   33.392899),   1.444500),
    19: ((  8.218600,   7.439800,   1.051900,   0.865900), (  12.794900,    0.774800,  213.186996,   41.684101),   1.422800),
    20: ((  8.626600,   7.387300,   1.589900,   1.021100), (  10.442100,    0.659900,   85.748398,  178.436996),   1.375100),
    21: ((  9.189000,   7.367900,   1.640900,   1.468000), (   9.021300,    0.572900,  136.108002,   51.353100),   1.332900),
    22: ((  9.759500,   7.355800,   1.699100,   1.902100), (   7.850800,    0.500000,   35.633801,  116.105003),   1.280700),
    23: (( 10.297100,   7.351100,   2.070300,   2.057100), (   6.865700,    0.438500,   26.893801,  102.477997),   1.219900),
    24: (( 10.640600,   7.353700,   3.324000,   1.492200), (   6.103800,    0.392000,   20.262600,   98.739899),   1.183200),
    25: (( 11.281900,   7.357300,   3.019300,   2.244100), (   5.340900,    0.343200,   17.867399,   83.754303),   1.089600),
    26: (( 11.769500,   7.357300,   3.522200,   2.304500), (   4.761100,    0.307200,   15.353500,   76.880501),   1.036900),
    27: (( 12.284100,   7.340900,   4.003400,   2.348800), (   4.279100,    0.278400,   13.535900,   71.169197),   1.011800),
    28: (( 12.837600,   7.292000,   4.443800,   2.380000), (   3.878500,    0.256500,   12.176300,   66.342102),   1.034100),
    29: (( 13.338000,   7.167600,   5.615800,   1.673500), (   3.582800,    0.247000,   11.396600,   64.812599),   1.191000),
    30: (( 14.074300,   7.031800,   5.165200,   2.410000), (   3.265500,    0.233300,   10.316300,   58.709702),   1.304100),
    31: (( 15.235400,   6.700600,   4.359100,   2.962300), (   3.066900,    0.241200,   10.780500,   61.413502),   1.718900),
    32: (( 16.081600,   6.374700,   3.706800,   3.683000), (   2.850900,    0.251600,   11.446800,   54.762501),   2.131300),
    33: (( 16.672300,   6.070100,   3.431300,   4.277900), (   2.634500,    0.264700,   12.947900,   47.797199),   2.531000),
    34: (( 17.000601,   5.819600,   3.973100,   4.354300), (   2.409800,    0.272600,   15.237200,   43.816299),   2.840900),
    35: (( 17.178900,   5.235800,   5.637700,   3.985100), (   2.172300,   16.579599,    0.260900,   41.432800),   2.955700),
    36: (( 17.355499,   6.728600,   5.549300,   3.537500), (   1.938400,   16.562300,    0.226100,   39.397202),   2.825000),
    37: (( 17.178400,   9.643500,   5.139900,   1.529200), (   1.788800,   17.315100,    0.274800,  164.934006),   3.487300),
    38: (( 17.566299,   9.818400,   5.422000,   2.669400), (   1.556400,   14.098800,    0.166400,  132.376007),   2.506400),
    39: (( 17.775999,  10.294600,   5.726290,   3.265880), (   1.402900,   12.800600,    0.125599,  104.353996),   1.912130),
    40: (( 17.876499,  10.948000,   5.417320,   3.657210), (   1.276180,   11.916000,    0.117622,   87.662697),   2.069290),
    41: (( 17.614201,  12.014400,   4.041830,   3.533460), (   1.188650,   11.766000,    0.204785,   69.795700),   3.755910),
    42: ((  3.702500,  17.235600,  12.887600,   3.742900), (   0.277200,    1.095800,   11.004000,   61.658401),   4.387500),
    43: (( 19.130100,  11.094800,   4.649010,   2.712630), (   0.864132,    8.144870,   21.570700,   86.847198),   5.404280),
    44: (( 19.267401,  12.918200,   4.863370,   1.567560), (   0.808520,    8.434670,   24.799700,   94.292801),   5.378740),
    45: (( 19.295700,  14.350100,   4.734250,   1.289180), (   0.751536,    8.217580,   25.874901,   98.606201),   5.328000),
    46: (( 19.331900,  15.501700,   5.295370,   0.605844), (   0.698655,    7.989290,   25.205200,   76.898598),   5.265930),
    47: (( 19.280800,  16.688499,   4.804500,   1.046300), (   0.644600,    7.472600,   24.660500,   99.815598),   5.179000),
    48: (( 19.221399,  17.644400,   4.461000,   1.602900), (   0.594600,    6.908900,   24.700800,   87.482498),   5.069400),
    49: (( 19.162399,  18.559601,   4.294800,   2.039600), (   0.547600,    6.377600,   25.849899,   92.802902),   4.939100),
    50: (( 19.188900,  19.100500,   4.458500,   2.466300), (   5.830300,    0.503100,   26.890900,   83.957100),   4.782100),
    51: (( 19.641800,  19.045500,   5.037100,   2.682700), (   5.303400,    0.460700,   27.907400,   75.282501),   4.590900),
    52: (( 19.964399,  19.013800,   6.144870,   2.523900), (   4.817420,    0.420885,   28.528400,   70.840302),   4.352000),
    53: (( 20.147200,  18.994900,   7.513800,   2.273500), (   4.347000,    0.381400,   27.766001,   66.877602),   4.071200),
    54: (( 20.293301,  19.029800,   8.976700,   1.990000), (   3.928200,    0.344000,   26.465900,   64.265800),   3.711800),
    55: (( 20.389200,  19.106199,  10.662000,   1.495300), (   3.569000,    0.310700,   24.387899,  213.904007),   3.335200),
    56: (( 20.336100,  19.297001,  10.888000,   2.695900), (   3.216000,    0.275600,   20.207300,  167.201996),   2.773100),
    57: (( 20.577999,  19.599001,  11.372700,   3.287190), (   2.948170,    0.244475,   18.772600,  133.123993),   2.146780),
    58: (( 21.167101,  19.769501,  11.851300,   3.330490), (   2.812190,    0.226836,   17.608299,  127.112999),   1.862640),
    59: (( 22.044001,  19.669701,  12.385600,   2.824280), (   2.773930,    0.222087,   16.766899,  143.643997),   2.058300),
    60: (( 22.684500,  19.684700,  12.774000,   2.851370), (   2.662480,    0.210628,   15.885000,  137.903000),   1.984860),
    61: (( 23.340500,  19.609501,  13.123500,   2.875160), (   2.562700,    0.202088,   15.100900,  132.720993),   2.028760),
    62: (( 24.004200,  19.425800,  13.439600,   2.896040), (   2.472740,    0.196451,   14.399600,  128.007004),   2.209630),
    63: (( 24.627399,  19.088600,  13.760300,   2.922700), (   2.387900,    0.194200,   13.754600,  123.174004),   2.574500),
    64: (( 25.070900,  19.079800,  13.851800,   3.545450), (   2.253410,    0.181951,   12.933100,  101.398003),   2.419600),
    65: (( 25.897600,  18.218500,  14.316700,   2.953540), (   2.242560,    0.196143,   12.664800,  115.362000),   3.589240),
    66: (( 26.507000,  17.638300,  14.559600,   2.965770), (   2.180200,    0.202172,   12.189900,  111.874001),   4.297280),
    67: (( 26.904900,  17.294001,  14.558300,   3.638370), (   2.070510,    0.197940,   11.440700,   92.656601),   4.567960),
    68: (( 27.656300,  16.428499,  14.977900,   2.982330), (   2.073560,    0.223545,   11.360400,  105.703003),   5.920460),
    69: (( 28.181900,  15.885100,  15.154200,   2.987060), (   2.028590,    0.238849,   10.997500,  102.960999),   6.756210),
    70: (( 28.664101,  15.434500,  15.308700,   2.989630), (   1.988900,    0.257119,   10.664700,  100.417000),   7.566720),
    71: (( 28.947599,  15.220800,  15.100000,   3.716010), (   1.901820,    9.985190,    0.261033,   84.329803),   7.976280),
    72: (( 29.143999,  15.172600,  14.758600,   4.300130), (   1.832620,    9.599900,    0.275116,   72.028999),   8.581540),
    73: (( 29.202400,  15.229300,  14.513500,   4.764920), (   1.773330,    9.370460,    0.295977,   63.364399),   9.243540),
    74: (( 29.081800,  15.430000,  14.432700,   5.119820), (   1.720290,    9.225900,    0.321703,   57.056000),   9.887500),
    75: (( 28.762100,  15.718900,  14.556400,   5.441740), (   1.671910,    9.092270,    0.350500,   52.086102),  10.472000),
    76: (( 28.189400,  16.155001,  14.930500,   5.675890), (   1.629030,    8.979480,    0.382661,   48.164700),  11.000500),
    77: (( 27.304899,  16.729601,  15.611500,   5.833770), (   1.592790,    8.865530,    0.417916,   45.001099),  11.472200),
    78: (( 27.005899,  17.763901,  15.713100,   5.783700), (   1.512930,    8.811740,    0.424593,   38.610298),  11.688300),
    79: (( 16.881901,  18.591299,  25.558201,   5.860000), (   0.461100,    8.621600,    1.482600,   36.395599),  12.065800),
    80: (( 20.680901,  19.041700,  21.657499,   5.967600), (   0.545000,    8.448400,    1.572900,   38.324600),  12.608900),
    81: (( 27.544600,  19.158400,  15.538000,   5.525930), (   0.655150,    8.707510,    1.963470,   45.814899),  13.174600),
    82: (( 31.061701,  13.063700,  18.441999,   5.969600), (   0.690200,    2.357600,    8.618000,   47.257900),  13.411800),
    83: (( 33.368900,  12.951000,  16.587700,   6.469200), (   0.704000,    2.923800,    8.793700,   48.009300),  13.578200),
    84: (( 34.672600,  15.473300,  13.113800,   7.025800), (   0.700999,    3.550780,    9.556420,   47.004501),  13.677000),
    85: (( 35.316299,  19.021099,   9.498870,   7.425180), (   0.685870,    3.974580,   11.382400,   45.471500),  13.710800),
    86: (( 35.563099,  21.281601,   8.003700,   7.443300), (   0.663100,    4.069100,   14.042200,   44.247299),  13.690500),
    87: (( 35.929901,  23.054701,  12.143900,   2.112530), (   0.646453,    4.176190,   23.105200,  150.645004),  13.724700),
    88: (( 35.763000,  22.906401,  12.473900,   3.210970), (   0.616341,    3.871350,   19.988701,  142.324997),  13.621100),
    89: (( 35.659698,  23.103201,  12.597700,   4.086550), (   0.589092,    3.651550,   18.599001,  117.019997),  13.526600),
    90: (( 35.564499,  23.421900,  12.747300,   4.807030), (   0.563359,    3.462040,   17.830900,   99.172203),  13.431400),
    91: (( 35.884701,  23.294800,  14.189100,   4.172870), (   0.547751,    3.415190,   16.923500,  105.250999),  13.428700),
    92: (( 36.022800,  23.412800,  14.949100,   4.188000), (   0.529300,    3.325300,   16.092699,  100.612999),  13.396600),
    93: (( 36.187401,  23.596399,  15.640200,   4.185500), (   0.511929,    3.253960,   15.362200,   97.490799),  13.357300),
    94: (( 36.525398,  23.808300,  16.770700,   3.479470), (   0.499384,    3.263710,   14.945500,  105.980003),  13.381200),
    95: (( 36.670601,  24.099199,  17.341499,   3.493310), (   0.483629,    3.206470,   14.313600,  102.273003),  13.359200),
    96: (( 36.648800,  24.409599,  17.399000,   4.216650), (   0.465154,    3.089970,   13.434600,   88.483398),  13.288700),
    97: (( 36.788101,  24.773600,  17.891899,   4.232840), (   0.451018,    3.046190,   12.894600,   86.002998),  13.275400),
    98: (( 36.918499,  25.199499,  18.331699,   4.243910), (   0.437533,    3.007750,   12.404400,   83.788101),  13.267400),
}

SCATTERING_COEFFICIENTS = MappingProxyType({
    z: ScatteringCoefficients(np.array(a), np.array(b), c)
    for z, (a, b, c) in _TABLE.items()
})


def atomic_number(element):
    """Atomic number of *element*, given as a symbol ('Cu') or an integer."""
    if isinstance(element, (int, np.integer)):
        z = int(element)
        if z not in SCATTERING_COEFFICIENTS:
            raise UnsupportedElementError(f'No scattering factors for Z = {z}')
        return z
    try:
        return _SYMBOL_TO_Z[str(element).strip().capitalize()]
    except KeyError:
        raise UnsupportedElementError(f'Unknown element symbol: {element!r}') from None


def scattering_coefficients(element):
    """Return the ScatteringCoefficients record for *element* (symbol or Z)."""
    return SCATTERING_COEFFICIENTS[atomic_number(element)]


def atomic_scattering_factor(element, s):
    """
    Atomic scattering factor f(s).

    Parameters
    ----------
    element : element symbol, atomic number, or a ScatteringCoefficients record
    s       : sin(theta)/lambda  [A^-1], scalar or array

    Returns
    -------
    f : float for scalar s, otherwise an array shaped like s
    """
    if isinstance(element, ScatteringCoefficients):
        coeffs = element
    else:
        coeffs = scattering_coefficients(element)

    s_arr = np.asarray(s, dtype=float)
    if np.any(s_arr > MAX_VALID_S):
        logger.warning('Scattering factor requested at s = %.3f, beyond the fitted range (s <= %.1f)',
                       float(np.max(s_arr)), MAX_VALID_S)

    s2 = s_arr[..., None] ** 2
    f = coeffs.c + np.sum(coeffs.a * np.exp(-coeffs.b * s2), axis=-1)
    if f.ndim == 0:
        return float(f)
    return f
